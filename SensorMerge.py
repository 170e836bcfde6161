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

"""Merges the raw sensor series of a deployment onto a single timeline

Each logical category (position, ctd, optics, ...) is satisfied by the first of its
configured channel choices present in the input.  Values are converted with the
registered conversion, gated by any status channel, passed through any manufacturer
calibration and aligned onto the merged timeline using the category's alignment
policy.
"""

import dataclasses

import numpy as np
import pandas as pd

import ProcessingOptions
import Utils
from BaseLog import log_debug, log_error, log_info, log_warning


class TimelineError(RuntimeError):
    """No usable timeline could be built for a deployment"""


@dataclasses.dataclass
class SensorSeries:
    """A named series of (timestamp, value) pairs recorded by one board

    Timestamps are epoch seconds (UTC).  Missing values are NaN - entries that are
    not numbers are turned into NaN, never dropped.
    """

    name: str
    time: np.ndarray
    values: np.ndarray
    board: str = ""

    def __post_init__(self):
        self.time = Utils.to_float_array(self.time)
        values = np.asarray(self.values)
        self.values = Utils.to_float_array(self.values)
        if values.dtype.kind not in "biuf":
            n_bad = np.count_nonzero(np.isnan(self.values))
            if n_bad:
                log_warning(f"{n_bad} non-numeric entries in {self.name} marked missing")
        if self.time.ndim != 1 or self.time.shape != self.values.shape:
            raise ValueError(
                f"{self.name}: time and values must be 1-d arrays of the same length"
            )
        t = self.time[np.isfinite(self.time)]
        if np.any(np.diff(t) < 0):
            raise ValueError(f"{self.name}: timestamps are not monotonic")

    def valid(self):
        """Mask of samples with both a timestamp and a value"""
        return np.isfinite(self.time) & np.isfinite(self.values)

    def has_data(self):
        return bool(self.valid().any())


class MergedRecord:
    """Columns of values keyed by a single, strictly increasing timeline

    The timeline is available as the "time" column.  Per column metadata (sources,
    conversions, fill policy, fit results) lives in attrs; the profiles and qc flags
    derived by later stages are attached as profiles and qc.
    """

    def __init__(self, time, deployment=""):
        time = np.asarray(time, dtype=float)
        if time.ndim != 1 or not np.all(np.isfinite(time)):
            raise ValueError("Merged timeline must be a 1-d array of finite times")
        if np.any(np.diff(time) <= 0):
            raise ValueError("Merged timeline must be strictly increasing")
        self.deployment = deployment
        self._columns = {"time": time}
        self.attrs = {"time": {}}
        self.profiles = []
        self.qc = {}

    @property
    def time(self):
        return self._columns["time"]

    def __len__(self):
        return self.time.size

    def __contains__(self, name):
        return name in self._columns

    def __getitem__(self, name):
        return self._columns[name]

    def __setitem__(self, name, values):
        if name == "time":
            raise KeyError("The timeline can not be replaced")
        values = np.asarray(values, dtype=float)
        if values.shape != self.time.shape:
            raise ValueError(
                f"Column {name} has shape {values.shape}, timeline is {self.time.shape}"
            )
        self._columns[name] = values
        self.attrs.setdefault(name, {})

    def get(self, name, default=None):
        return self._columns.get(name, default)

    def names(self):
        """Column names, in the order they were added"""
        return list(self._columns.keys())

    def has_data(self, name):
        """True if the column exists and holds at least one valid value"""
        return name in self._columns and bool(np.isfinite(self._columns[name]).any())

    def first_available(self, choices):
        """Returns the first name in choices with data, or None"""
        for name in choices:
            if self.has_data(name):
                return name
        return None

    def to_dataframe(self):
        """The columns as a DataFrame, indexed by time"""
        df = pd.DataFrame(
            {k: v for k, v in self._columns.items() if k != "time"}, index=self.time
        )
        df.index.name = "time"
        return df


def align_series(src_time, src_values, timeline, method="linear", max_gap=None):
    """Aligns a series onto the timeline

    Input:
        src_time, src_values - the series, time ordered
        timeline - increasing target times
        method - exact: value only where a source sample has the same timestamp
                 previous: last source value at or before each time
                 nearest: closest source value
                 linear: interpolated between the bounding source samples,
                         missing outside the source span
        max_gap - seconds; previous/nearest do not reach further than this, linear
                  does not interpolate across source gaps longer than this

    Returns:
        array of values on the timeline, NaN where there is no value
    """
    src_time = np.asarray(src_time, dtype=float)
    src_values = np.asarray(src_values, dtype=float)
    timeline = np.asarray(timeline, dtype=float)
    out = np.full(timeline.shape, np.nan)

    valid = np.isfinite(src_time) & np.isfinite(src_values)
    if not valid.any():
        return out
    # Repeated timestamps keep the last value reported
    src_s = pd.Series(src_values[valid], index=src_time[valid])
    src_s = src_s.groupby(level=0).last()
    t = src_s.index.to_numpy(dtype=float)
    v = src_s.to_numpy(dtype=float)

    if method == "exact":
        idx = np.searchsorted(t, timeline)
        ok = idx < t.size
        ok[ok] = t[idx[ok]] == timeline[ok]
        out[ok] = v[idx[ok]]
    elif method in ("previous", "nearest"):
        merged = pd.merge_asof(
            pd.DataFrame({"time": timeline}),
            pd.DataFrame({"time": t, "value": v}),
            on="time",
            direction="backward" if method == "previous" else "nearest",
            tolerance=max_gap,
        )
        out = merged["value"].to_numpy(dtype=float)
    elif method == "linear":
        out = np.interp(timeline, t, v, left=np.nan, right=np.nan)
        if max_gap is not None and t.size > 1:
            pos = np.searchsorted(t, timeline, side="right")
            inside = (pos > 0) & (pos < t.size)
            lo = t[np.clip(pos - 1, 0, None)]
            hi = t[np.clip(pos, None, t.size - 1)]
            out[inside & ((hi - lo) > max_gap) & (timeline != lo)] = np.nan
    else:
        raise ValueError(f"Unknown alignment method {method}")
    return out


def _convert(values, conversion, channel, deployment):
    """Applies a registered conversion - samples that fail to convert become NaN"""
    values = np.asarray(values, dtype=float)
    if conversion is None:
        return values.copy()
    func = ProcessingOptions.conversion_funcs[conversion]
    try:
        converted = Utils.to_float_array(func(values))
        if converted.shape != values.shape:
            raise ValueError(f"{conversion} changed the shape of {channel}")
    except Exception:
        log_debug(f"Vector {conversion} of {channel} failed - converting by sample", "exc")
        converted = np.full(values.shape, np.nan)
        for ii, val in enumerate(values):
            try:
                converted[ii] = np.asarray(func(np.asarray([val])), dtype=float).ravel()[0]
            except Exception:
                converted[ii] = np.nan

    converted[~np.isfinite(converted)] = np.nan
    n_failed = np.count_nonzero(np.isfinite(values) & np.isnan(converted))
    if n_failed:
        log_warning(
            f"{n_failed} of {values.size} samples of {channel} could not be converted by {conversion} - marked missing",
            alert=deployment or None,
        )
    return converted


def _values_at(series, times):
    """Values of series at exactly matching timestamps (NaN elsewhere)"""
    return align_series(series.time, series.values, times, "exact")


def _gate_by_status(values, times, status_series, choice):
    """Marks samples missing where the status channel does not report a good state"""
    status = _values_at(status_series, times)
    ok = np.ones(values.shape, dtype=bool)
    if choice.status_good:
        ok &= np.isin(status, choice.status_good)
    if choice.status_bad:
        ok &= ~np.isin(status, choice.status_bad)
    gated = values.copy()
    gated[~ok] = np.nan
    return gated, np.count_nonzero(~ok & np.isfinite(values))


def _select_choice(category, series_d):
    """First choice whose data channels are all present with data"""
    for choice in category.choices:
        missing = [
            ch
            for ch in choice.fields.values()
            if ch not in series_d or not series_d[ch].has_data()
        ]
        if not missing:
            return choice
        log_debug(f"{category.name}: {dict(choice.fields)} not used - no data for {missing}")
    return None


def _calibrate(converted, choice, category_name, calibration_parameters, deployment):
    """Applies the choice's manufacturer calibration to its converted fields

    The calibration inputs are taken on the clock of the first calibrated field.

    Returns:
        field -> (time, values), or None when coefficients are missing or the
        calibration fails
    """
    calibration = ProcessingOptions.calibration_funcs[choice.calibration]
    coefs_d = {}
    missing = []
    for field in calibration.calibrated:
        channel = choice.fields[field]
        if channel in calibration_parameters:
            coefs_d[field] = calibration_parameters[channel]
        else:
            missing.append(channel)
    if missing:
        log_warning(
            f"No calibration coefficients for {missing} - {category_name} not merged",
            alert=deployment or None,
        )
        return None

    base_t = converted[calibration.calibrated[0]][0]
    values_d = {}
    for field in calibration.inputs:
        t, vals = converted[field]
        if t.shape != base_t.shape or not np.array_equal(t, base_t):
            vals = align_series(t, vals, base_t, "linear")
        values_d[field] = vals
    try:
        calibrated_d = calibration.func(values_d, coefs_d)
    except ValueError:
        log_error(
            f"{choice.calibration} calibration of {category_name} failed - not merged",
            "exc",
            alert=deployment or None,
        )
        return None

    ret_val = dict(converted)
    for field, vals in calibrated_d.items():
        vals = np.asarray(vals, dtype=float)
        vals[~np.isfinite(vals)] = np.nan
        ret_val[field] = (base_t, vals)
    log_info(f"{category_name}: {choice.calibration} calibration applied to {list(calibrated_d)}")
    return ret_val


def _merge_category(
    record, series_d, category, options, deployment, calibration_parameters
):
    """Adds the columns of one category to the record"""
    if not category.choices:
        log_debug(f"No choices configured for {category.name}")
        return

    choice = _select_choice(category, series_d)
    if choice is None:
        log_warning(
            f"No {category.name} sensor found among {[dict(c.fields) for c in category.choices]} - skipping",
            alert=deployment or None,
        )
        return
    log_info(f"{category.name}: using {dict(choice.fields)}")

    status_series = None
    if choice.status:
        status_series = series_d.get(choice.status)
        if status_series is None:
            log_warning(
                f"Status channel {choice.status} not found - {category.name} is not gated",
                alert=deployment or None,
            )

    converted = {}
    for field, channel in choice.fields.items():
        s = series_d[channel]
        vals = _convert(s.values, choice.conversions.get(field), channel, deployment)
        if status_series is not None:
            vals, n_gated = _gate_by_status(vals, s.time, status_series, choice)
            if n_gated:
                log_info(f"{n_gated} samples of {channel} excluded by {choice.status}")
        converted[field] = (s.time, vals)

    if choice.calibration:
        converted = _calibrate(
            converted, choice, category.name, calibration_parameters, deployment
        )
        if converted is None:
            return

    if category.name == "position":
        # A fix of exactly (0, 0) is a receiver without a solution
        (lat_t, lat_v), (lon_t, lon_v) = converted["latitude"], converted["longitude"]
        lat_zero = (lat_v == 0.0) & (align_series(lon_t, lon_v, lat_t, "exact") == 0.0)
        lon_zero = (lon_v == 0.0) & (align_series(lat_t, lat_v, lon_t, "exact") == 0.0)
        lat_v[lat_zero] = np.nan
        lon_v[lon_zero] = np.nan

    calibrated_fields = ()
    if choice.calibration:
        calibrated_fields = ProcessingOptions.calibration_funcs[choice.calibration].calibrated

    for field, (t, vals) in converted.items():
        column = category.columns[field]
        aligned = align_series(
            t, vals, record.time, category.alignment, category.alignment_max_gap
        )
        if category.filling != "none":
            aligned = Utils.fill_invalid_values(
                record.time, aligned, category.filling, category.filling_max_gap
            )
        record[column] = aligned
        record.attrs[column] = {
            "source": choice.fields[field],
            "calibration": choice.calibration if field in calibrated_fields else "",
            "conversion": choice.conversions.get(field, ""),
            "alignment": category.alignment,
            "filling": category.filling,
        }

    if choice.time:
        clock = series_d.get(choice.time)
        if clock is None or not clock.has_data():
            log_warning(
                f"Time channel {choice.time} for {category.name} not found - using the merged timeline",
                alert=deployment or None,
            )
            return
        aligned = align_series(
            clock.time,
            clock.values,
            record.time,
            category.alignment,
            category.alignment_max_gap,
        )
        if options.time_filling:
            aligned = Utils.fill_invalid_values(
                record.time, aligned, "previous", options.time_filling_max_gap
            )
        record[category.time_column] = aligned
        record.attrs[category.time_column] = {
            "source": choice.time,
            "alignment": category.alignment,
            "filling": "previous" if options.time_filling else "none",
        }


def build_timeline(series_d, options):
    """Builds the merged timeline from the configured time channel(s)

    Raises:
        TimelineError if no time channel holds any usable time
    """
    time_category = options.categories["time"]
    times = []
    for choice in time_category.choices:
        channel = choice.fields["time"]
        s = series_d.get(channel)
        if s is None:
            log_debug(f"Time channel {channel} not present")
            continue
        t = _convert(s.values, choice.conversions.get("time"), channel, None)
        t = t[np.isfinite(t) & (t > 0)]
        if t.size == 0:
            log_debug(f"Time channel {channel} holds no valid times")
            continue
        log_info(f"Timeline from {channel} ({t.size} samples)")
        times.append(t)
        if options.timeline_mode == "first":
            break

    if options.timeline_mode == "union":
        for s in series_d.values():
            if not options.timeline_boards or s.board in options.timeline_boards:
                t = s.time[np.isfinite(s.time) & (s.time > 0)]
                if t.size:
                    times.append(t)

    if not times:
        raise TimelineError(
            f"No usable time channel among {[c.fields['time'] for c in time_category.choices]}"
        )
    return np.unique(np.concatenate(times))


def merge_sensor_series(
    series_list, options, deployment="", calibration_parameters=None
):
    """Builds the MergedRecord for a deployment

    Input:
        series_list - SensorSeries from the format specific loaders
        options - ProcessingOptions
        deployment - name used in log entries and alerts
        calibration_parameters - raw channel -> coefficients for this deployment,
                                 overriding those in options

    Returns:
        MergedRecord with one column per satisfied logical quantity

    Raises:
        TimelineError when there is no usable timeline
    """
    series_d = {}
    for s in series_list:
        if s.name in series_d:
            log_warning(
                f"Duplicate series {s.name} ({s.board}) - keeping the first",
                alert=deployment or None,
            )
            continue
        series_d[s.name] = s

    calibration_d = dict(options.calibration_parameters)
    calibration_d.update(calibration_parameters or {})

    record = MergedRecord(build_timeline(series_d, options), deployment)
    for name, category in options.categories.items():
        if name == "time":
            continue
        _merge_category(
            record, series_d, category, options, deployment, calibration_d
        )

    log_info(f"Merged {len(series_d)} series into {len(record)} samples: {record.names()}")
    return record
