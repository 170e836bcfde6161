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

"""Profile and transect segmentation of the merged glider timeline"""

import dataclasses

import numpy as np

from BaseLog import log_debug, log_info
from Globals import ProfileDirection


@dataclasses.dataclass
class Profile:
    """One cast between two turning points of the depth series

    head and tail are the indices of the turning points in the merged timeline.
    The samples of the profile are the ones strictly between them.
    """

    index: int
    direction: ProfileDirection
    head: int
    tail: int

    @property
    def samples(self):
        return slice(self.head + 1, self.tail)

    def __len__(self):
        return max(self.tail - self.head - 1, 0)


def _turning_points(depth_v, min_range):
    """Indices into depth_v of the alternating depth extrema

    A turn is only accepted once the depth has moved back more than min_range from
    the extremum, so excursions smaller than min_range do not split a cast.  The
    last sample reached in the final direction closes the list.
    """
    turns = []
    if depth_v.size < 2:
        return turns
    lo_i = hi_i = ext_i = 0
    direction = 0
    for i in range(1, depth_v.size):
        d = depth_v[i]
        if direction == 0:
            if d < depth_v[lo_i]:
                lo_i = i
            if d > depth_v[hi_i]:
                hi_i = i
            if depth_v[hi_i] - depth_v[lo_i] > min_range:
                if lo_i < hi_i:
                    turns.append(lo_i)
                    direction = ProfileDirection.descending
                    ext_i = hi_i
                else:
                    turns.append(hi_i)
                    direction = ProfileDirection.ascending
                    ext_i = lo_i
        elif direction == ProfileDirection.descending:
            if d > depth_v[ext_i]:
                ext_i = i
            elif depth_v[ext_i] - d > min_range:
                turns.append(ext_i)
                direction = ProfileDirection.ascending
                ext_i = i
        else:
            if d < depth_v[ext_i]:
                ext_i = i
            elif d - depth_v[ext_i] > min_range:
                turns.append(ext_i)
                direction = ProfileDirection.descending
                ext_i = i
    if direction != 0:
        turns.append(ext_i)
    return turns


def _gap_ratio(depth, head, tail):
    """Fraction of rows from head to tail (inclusive) with no depth"""
    return np.count_nonzero(np.isnan(depth[head : tail + 1])) / (tail - head + 1)


def find_profiles(
    depth, time=None, min_range=10.0, max_gap_ratio=1.0, min_duration=0.0
):
    """Finds the profiles (casts) in a depth series

    Input:
        depth - depth (m, positive down), NaN where missing
        time - sample times, for the duration check; None to skip it
        min_range - a cast must span more than this depth range
        max_gap_ratio - casts missing more than this fraction of their depths
                        are merged into the neighboring profile
        min_duration - a cast must last longer than this (s)

    Returns:
        List of Profile, in time order, indexed from 1
    """
    depth = np.asarray(depth, dtype=float)
    valid = np.isfinite(depth)
    if time is not None:
        time = np.asarray(time, dtype=float)
        valid &= np.isfinite(time)
    valid_i = np.flatnonzero(valid)
    turns = valid_i[_turning_points(depth[valid_i], min_range)]

    casts = []
    for head, tail in zip(turns[:-1], turns[1:]):
        cast_range = abs(depth[tail] - depth[head])
        if not cast_range > min_range:
            log_debug(f"Cast {head}:{tail} spans {cast_range:.2f}m - dropped")
            continue
        if time is not None and not (time[tail] - time[head]) > min_duration:
            log_debug(f"Cast {head}:{tail} is too short in time - dropped")
            continue
        direction = (
            ProfileDirection.descending
            if depth[tail] > depth[head]
            else ProfileDirection.ascending
        )
        casts.append([int(head), int(tail), direction])

    # Merge sparse casts into a neighbor
    merged = []
    pending_head = None
    for head, tail, direction in casts:
        if pending_head is not None:
            head = pending_head
            pending_head = None
        ratio = _gap_ratio(depth, head, tail)
        if ratio > max_gap_ratio and len(casts) > 1:
            if merged:
                log_debug(f"Cast {head}:{tail} missing {ratio:.2f} of depths - merged into previous")
                merged[-1][1] = tail
            else:
                log_debug(f"Cast {head}:{tail} missing {ratio:.2f} of depths - merged into next")
                pending_head = head
            continue
        merged.append([head, tail, direction])
    if pending_head is not None:
        # Every cast was sparse
        merged.append([pending_head, casts[-1][1], casts[0][2]])

    profiles = [
        Profile(index=k + 1, direction=direction, head=head, tail=tail)
        for k, (head, tail, direction) in enumerate(merged)
    ]
    log_info(f"Found {len(profiles)} profiles")
    return profiles


def profile_arrays(profiles, n_samples):
    """Per sample profile index and direction

    Samples inside profile k get index k and the profile's direction.  Turning points
    and samples between profiles get the index of the preceding profile plus 0.5
    (0.5 before the first profile) and direction 0.
    """
    profile_index = np.full(n_samples, 0.5)
    profile_direction = np.zeros(n_samples)
    for p in profiles:
        profile_index[p.samples] = p.index
        profile_index[p.tail : n_samples] = p.index + 0.5
        profile_direction[p.samples] = p.direction
    return profile_index, profile_direction


def validate_profile(depth, *data, min_range=0.0, max_gap_ratio=1.0):
    """Checks a profile has enough vertical coverage to be used

    Input:
        depth - depth of the profile samples
        data - other arrays of the same length; rows where any of them is missing
               are not full rows
        min_range - the profile must span at least this depth range
        max_gap_ratio - the largest depth gap without full rows, including the
                        ends of the profile, relative to the depth range

    Returns:
        valid - True when the profile passes
        full_rows - boolean array of the rows with depth and every data value
    """
    depth = np.asarray(depth, dtype=float)
    full_rows = np.isfinite(depth)
    for d in data:
        full_rows &= np.isfinite(np.asarray(d, dtype=float))
    if not full_rows.any():
        return False, full_rows
    depth_range = np.nanmax(depth) - np.nanmin(depth)
    if depth_range < min_range:
        return False, full_rows
    full_depth = depth[full_rows]
    max_gap = max(
        np.min(full_depth) - np.nanmin(depth),
        np.max(np.abs(np.diff(full_depth))) if full_depth.size > 1 else 0.0,
        np.nanmax(depth) - np.max(full_depth),
    )
    if max_gap > max_gap_ratio * depth_range:
        return False, full_rows
    return True, full_rows


def find_transects(time, waypoint_latitude=None, waypoint_longitude=None, max_gap=None):
    """Transect index per sample

    The index starts at 1 and increments at each change of the waypoint coordinates
    and at each gap in time longer than max_gap (s)
    """
    time = np.asarray(time, dtype=float)
    change = np.zeros(time.shape, dtype=bool)
    for coord in (waypoint_latitude, waypoint_longitude):
        if coord is None:
            continue
        coord = np.asarray(coord, dtype=float)
        valid_i = np.flatnonzero(np.isfinite(coord))
        if valid_i.size < 2:
            continue
        coord_changed = coord[valid_i[1:]] != coord[valid_i[:-1]]
        change[valid_i[1:][coord_changed]] = True
    if max_gap is not None:
        valid_i = np.flatnonzero(np.isfinite(time))
        gaps = np.diff(time[valid_i]) > max_gap
        change[valid_i[1:][gaps]] = True
    transect_index = 1.0 + np.cumsum(change)
    log_debug(f"Found {int(transect_index[-1]) if transect_index.size else 0} transects")
    return transect_index

