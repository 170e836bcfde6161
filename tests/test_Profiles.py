# -*- python-fmt -*-

## Copyright (c) 2024  University of Washington.
##
## Redistribution and use in source and binary forms, with or without
## modification, are permitted provided that the following conditions are met:
##
## 1. Redistributions of source code must retain the above copyright notice, this
##    list of conditions and the following disclaimer.
##
## 2. Redistributions in binary form must reproduce the above copyright notice,
##    this list of conditions and the following disclaimer in the documentation
##    and/or other materials provided with the distribution.
##
## 3. Neither the name of the University of Washington nor the names of its
##    contributors may be used to endorse or promote products derived from this
##    software without specific prior written permission.
##
## THIS SOFTWARE IS PROVIDED BY THE UNIVERSITY OF WASHINGTON AND CONTRIBUTORS “AS
## IS” AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED TO, THE
## IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR PURPOSE ARE
## DISCLAIMED. IN NO EVENT SHALL THE UNIVERSITY OF WASHINGTON OR CONTRIBUTORS BE
## LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL, EXEMPLARY, OR
## CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO, PROCUREMENT OF SUBSTITUTE
## GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR BUSINESS INTERRUPTION)
## HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER IN CONTRACT, STRICT
## LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT
## OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.

import numpy as np
import pytest
import testutils

import Profiles
from Globals import ProfileDirection


@pytest.mark.parametrize("n_legs", (1, 2, 5))
def test_sawtooth_profiles(n_legs):
    time_v, depth = testutils.sawtooth(n_legs)
    profiles = Profiles.find_profiles(depth, time_v)
    assert len(profiles) == n_legs
    assert [p.index for p in profiles] == list(range(1, n_legs + 1))
    for ii, p in enumerate(profiles):
        expected = (
            ProfileDirection.descending if ii % 2 == 0 else ProfileDirection.ascending
        )
        assert p.direction == expected
    # Consecutive profiles share their turning point
    for p1, p2 in zip(profiles[:-1], profiles[1:]):
        assert p1.tail == p2.head
        assert depth[p1.tail] in (0.0, 50.0)


def test_single_monotonic_profile():
    depth = np.linspace(0.0, 100.0, 101)
    profiles = Profiles.find_profiles(depth)
    assert len(profiles) == 1
    p = profiles[0]
    assert (p.head, p.tail) == (0, 100)
    assert p.direction == ProfileDirection.descending
    assert len(p) == 99
    assert p.samples == slice(1, 100)


@pytest.mark.parametrize(
    "depth",
    (np.array([]), np.array([5.0]), np.full(10, np.nan), np.linspace(0.0, 8.0, 20)),
)
def test_no_profiles(depth):
    assert Profiles.find_profiles(depth) == []


def test_small_excursions_do_not_split():
    depth = np.concatenate(
        (np.linspace(0.0, 30.0, 31), [27.0, 29.0], np.linspace(31.0, 60.0, 30))
    )
    profiles = Profiles.find_profiles(depth, min_range=10.0)
    assert len(profiles) == 1


def test_short_casts_dropped():
    time_v, depth = testutils.sawtooth(3)
    profiles = Profiles.find_profiles(depth, time_v, min_duration=1000.0)
    assert profiles == []


def test_sparse_cast_merged_into_previous():
    depth = np.concatenate(
        (
            np.linspace(0.0, 50.0, 51),
            np.linspace(49.0, 0.0, 50),
            np.linspace(1.0, 50.0, 50),
        )
    )
    depth[52:99] = np.nan
    profiles = Profiles.find_profiles(depth, max_gap_ratio=0.8)
    assert len(profiles) == 2
    assert (profiles[0].head, profiles[0].tail) == (0, 100)
    assert (profiles[1].head, profiles[1].tail) == (100, 150)
    assert [p.index for p in profiles] == [1, 2]


def test_sparse_first_cast_merged_into_next():
    depth = np.concatenate((np.linspace(0.0, 50.0, 51), np.linspace(49.0, 0.0, 50)))
    depth[2:49] = np.nan
    profiles = Profiles.find_profiles(depth, max_gap_ratio=0.8)
    assert len(profiles) == 1
    assert (profiles[0].head, profiles[0].tail) == (0, 100)
    assert profiles[0].direction == ProfileDirection.ascending


def test_profile_arrays():
    time_v, depth = testutils.sawtooth(2)
    profiles = Profiles.find_profiles(depth, time_v)
    profile_index, profile_direction = Profiles.profile_arrays(profiles, depth.size)
    p1, p2 = profiles
    assert profile_index[p1.head] == 0.5
    assert np.all(profile_index[p1.samples] == 1)
    assert profile_index[p1.tail] == 1.5
    assert np.all(profile_index[p2.samples] == 2)
    assert profile_index[-1] == 2.5
    assert np.all(profile_direction[p1.samples] == ProfileDirection.descending)
    assert np.all(profile_direction[p2.samples] == ProfileDirection.ascending)
    assert profile_direction[p1.tail] == ProfileDirection.inflection


@pytest.mark.parametrize(
    "depth,data,min_range,max_gap_ratio,valid",
    (
        (np.linspace(0.0, 100.0, 101), np.ones(101), 10.0, 0.8, True),
        (np.linspace(0.0, 5.0, 101), np.ones(101), 10.0, 0.8, False),
        (
            np.linspace(0.0, 100.0, 101),
            np.concatenate((np.ones(20), np.full(81, np.nan))),
            10.0,
            0.5,
            False,
        ),
        (np.linspace(0.0, 100.0, 101), np.full(101, np.nan), 0.0, 1.0, False),
    ),
)
def test_validate_profile(depth, data, min_range, max_gap_ratio, valid):
    is_valid, full_rows = Profiles.validate_profile(
        depth, data, min_range=min_range, max_gap_ratio=max_gap_ratio
    )
    assert is_valid == valid
    np.testing.assert_array_equal(full_rows, np.isfinite(data))


def test_find_transects():
    time_v = np.arange(8.0)
    wpt_lat = np.array([10.0, 10.0, np.nan, 11.0, 11.0, 11.0, 12.0, 12.0])
    wpt_lon = np.full(8, -120.0)
    np.testing.assert_array_equal(
        Profiles.find_transects(time_v, wpt_lat, wpt_lon),
        [1, 1, 1, 2, 2, 2, 3, 3],
    )


def test_find_transects_time_gaps():
    time_v = np.array([0.0, 1.0, 2.0, 100.0, 101.0])
    np.testing.assert_array_equal(
        Profiles.find_transects(time_v, max_gap=10.0), [1, 1, 1, 2, 2]
    )
    np.testing.assert_array_equal(Profiles.find_transects(time_v), np.ones(5))
