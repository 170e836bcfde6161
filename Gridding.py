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

"""Gridding of profile indexed samples onto a regular depth axis"""

import dataclasses

import numpy as np
import scipy.stats

import QC
from BaseLog import log_debug, log_info, log_warning


@dataclasses.dataclass
class GriddedField:
    """One variable binned to (profile, depth)"""

    name: str
    data: np.ndarray
    depth_edges: np.ndarray
    attrs: dict = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class GriddedData:
    """The gridded product of a deployment

    profile_index, time, latitude and longitude have one entry per profile,
    depth (grid levels, the bin centers) one entry per bin.
    """

    profile_index: np.ndarray
    depth: np.ndarray
    depth_edges: np.ndarray
    time: np.ndarray
    latitude: np.ndarray
    longitude: np.ndarray
    fields: dict = dataclasses.field(default_factory=dict)
    attrs: dict = dataclasses.field(default_factory=dict)


def depth_levels(depth_v, depth_step):
    """Grid levels on multiples of depth_step, from the shallowest to the deepest sample"""
    lo = np.floor(np.nanmin(depth_v) / depth_step) * depth_step
    hi = np.ceil(np.nanmax(depth_v) / depth_step) * depth_step
    n_levels = int(round((hi - lo) / depth_step)) + 1
    return lo + depth_step * np.arange(n_levels)


def depth_bin_edges(depth_v, depth_step):
    """Edges of the bins centered on depth_levels - each bin spans a level +/- depth_step/2"""
    levels = depth_levels(depth_v, depth_step)
    return np.append(levels - 0.5 * depth_step, levels[-1] + 0.5 * depth_step)


def _per_profile_mean(profile_pos, values, n_profiles):
    """Mean of the valid values of each profile - NaN for a profile with none"""
    ret_val = np.full(n_profiles, np.nan)
    ok = np.isfinite(values) & np.isfinite(profile_pos)
    if ok.any():
        ret_val = scipy.stats.binned_statistic(
            profile_pos[ok],
            values[ok],
            statistic="mean",
            bins=n_profiles,
            range=(-0.5, n_profiles - 0.5),
        ).statistic
    return ret_val


def bin_profiles(
    profile_pos, depth_v, values, n_profiles, depth_edges, reducer="median"
):
    """Reduces values into (profile, depth bin) cells

    Cells with no samples are NaN
    """
    ok = np.isfinite(depth_v) & np.isfinite(values)
    if not ok.any():
        return np.full((n_profiles, depth_edges.size - 1), np.nan)
    return scipy.stats.binned_statistic_2d(
        profile_pos[ok],
        depth_v[ok],
        values[ok],
        statistic=reducer,
        bins=[np.arange(n_profiles + 1) - 0.5, depth_edges],
    ).statistic


def grid_glider_data(record, options, depth_step=None):
    """Grids the variables of a processed (and optionally qc'd) record

    Samples flagged probably bad, bad or missing in record.qc are left out.  Every
    profile gets a row, even if it holds no valid samples.

    Input:
        record - MergedRecord with a profile index column
        options - GriddingOptions
        depth_step - overrides options.depth_step

    Returns:
        GriddedData, or None when the record has no profiles or depth
    """
    depth_step = depth_step or options.depth_step
    profile_name = record.first_available(options.profile_list)
    depth_name = record.first_available(options.depth_list)
    if profile_name is None or depth_name is None:
        log_warning(
            f"No profile index ({options.profile_list}) or depth ({options.depth_list}) - not gridding",
            alert=record.deployment or None,
        )
        return None

    profile_v = record[profile_name]
    in_profile = np.isfinite(profile_v) & (profile_v == np.floor(profile_v))
    depth_v = np.where(in_profile, record[depth_name], np.nan)
    profiles = np.unique(profile_v[in_profile])
    if profiles.size == 0 or not np.isfinite(depth_v).any():
        log_warning("No profiles to grid", alert=record.deployment or None)
        return None
    n_profiles = profiles.size
    profile_pos = np.full(profile_v.shape, np.nan)
    profile_pos[in_profile] = np.searchsorted(profiles, profile_v[in_profile])

    levels = depth_levels(depth_v, depth_step)
    depth_edges = depth_bin_edges(depth_v, depth_step)
    log_info(
        f"Gridding {n_profiles} profiles into {depth_edges.size - 1} bins of {depth_step}m ({depth_name})"
    )

    time_name = record.first_available(options.time_list)
    time_v = record[time_name] if time_name else np.full(len(record), np.nan)
    latitude = longitude = np.full(n_profiles, np.nan)
    for position in options.position_list:
        if record.has_data(position["latitude"]) and record.has_data(
            position["longitude"]
        ):
            latitude = _per_profile_mean(
                profile_pos, record[position["latitude"]], n_profiles
            )
            longitude = _per_profile_mean(
                profile_pos, record[position["longitude"]], n_profiles
            )
            break
    else:
        log_debug("No position for the gridded product")

    gridded = GriddedData(
        profile_index=profiles,
        depth=levels,
        depth_edges=depth_edges,
        time=_per_profile_mean(profile_pos, time_v, n_profiles),
        latitude=latitude,
        longitude=longitude,
        attrs={
            "profile_source": profile_name,
            "depth_source": depth_name,
            "depth_step": depth_step,
            "reducer": options.reducer,
        },
    )

    for name in options.variable_list:
        if name not in record:
            log_debug(f"{name} not present - not gridded")
            continue
        values = np.array(record[name], dtype=float)
        qc_v = record.qc.get(name)
        if qc_v is not None:
            values[QC.bad_qc(qc_v, mask=True)] = np.nan
        gridded.fields[name] = GriddedField(
            name=name,
            data=bin_profiles(
                profile_pos, depth_v, values, n_profiles, depth_edges, options.reducer
            ),
            depth_edges=depth_edges,
            attrs=dict(record.attrs.get(name, {})),
        )
    return gridded
