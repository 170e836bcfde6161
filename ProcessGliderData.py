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

"""Physical corrections, derived variables and segmentation of a merged deployment

Everything here works on a MergedRecord in place: corrected and derived variables are
added as new columns next to their raw counterparts.  A correction whose inputs are
missing is logged and skipped, and the variables it would have produced are absent.
"""

import numpy as np

import CTDCorrections
import ProcessingOptions
import Profiles
import Utils
from BaseLog import log_debug, log_info, log_warning


def _alert(record):
    return record.deployment or None


def filter_pressure(record, options):
    """Adds pressure_filtered, the Seabird low pass filtered pressure"""
    if not options.pressure_filtering:
        return
    if not record.has_data("pressure"):
        log_info("No pressure - skipping pressure filtering")
        return
    time_name = record.first_available(("time_ctd", "time"))
    record["pressure_filtered"] = CTDCorrections.filter_pressure(
        record[time_name], record["pressure"], options.pressure_filter_constant
    )
    record.attrs["pressure_filtered"] = {
        "source": "pressure",
        "time": time_name,
        "filter_time_constant": options.pressure_filter_constant,
    }


def derive_depth_ctd(record, options):
    """Adds depth_ctd from the CTD pressure and the (filled) latitude"""
    if not options.depth_ctd_derivation:
        return
    pressure_name = record.first_available(("pressure_filtered", "pressure"))
    if pressure_name is None:
        log_info("No pressure - skipping depth_ctd")
        return
    if not record.has_data("latitude"):
        log_warning(
            "No latitude - skipping depth_ctd derivation", alert=_alert(record)
        )
        return
    latitude = Utils.fill_invalid_values(record.time, record["latitude"], "nearest")
    record["depth_ctd"] = Utils.depth_from_pressure(record[pressure_name], latitude)
    record.attrs["depth_ctd"] = {"source": pressure_name}


def segment_profiles(record, options):
    """Finds the profiles and transects of the deployment

    Adds profile_index, profile_direction, transect_index and distance_over_ground
    and sets record.profiles
    """
    for entry in options.profiling_list:
        if record.has_data(entry["depth"]) and record.has_data(entry["time"]):
            depth_name, time_name = entry["depth"], entry["time"]
            break
    else:
        log_warning(
            f"No depth/time pair among {[dict(p) for p in options.profiling_list]} - no profiles",
            alert=_alert(record),
        )
        depth_name = time_name = None

    if depth_name is not None:
        record.profiles = Profiles.find_profiles(
            record[depth_name],
            record[time_name],
            min_range=options.profile_min_range,
            max_gap_ratio=options.profile_max_gap_ratio,
            min_duration=options.profile_min_duration,
        )
        profile_index, profile_direction = Profiles.profile_arrays(
            record.profiles, len(record)
        )
        record["profile_index"] = profile_index
        record["profile_direction"] = profile_direction
        record.attrs["profile_index"] = {"depth": depth_name, "time": time_name}
        record.attrs["profile_direction"] = {"depth": depth_name, "time": time_name}

    record["transect_index"] = Profiles.find_transects(
        record.time,
        record.get("waypoint_latitude"),
        record.get("waypoint_longitude"),
        options.transect_max_gap,
    )

    if record.has_data("latitude") and record.has_data("longitude"):
        record["distance_over_ground"] = Utils.cumulative_distance(
            record["latitude"], record["longitude"]
        )


def _opposite_pairs(profiles):
    """Consecutive profiles going in opposite directions"""
    for p1, p2 in zip(profiles[:-1], profiles[1:]):
        if p1.direction * p2.direction < 0:
            yield p1, p2


def _estimate(estimates, estimator, n_params):
    """Combines the per pair estimates, None if there are none"""
    if not estimates:
        return None
    combined = ProcessingOptions.estimators[estimator](np.array(estimates), axis=0)
    if combined.size != n_params or not np.all(np.isfinite(combined)):
        return None
    return tuple(float(c) for c in combined)


def _flow(record, time_name, depth_name, pitch_name, sel):
    pitch = record[pitch_name][sel] if pitch_name else None
    flow = CTDCorrections.flow_speed(
        record[time_name][sel], record[depth_name][sel], pitch
    )
    if flow.size == 0:
        return np.full(record.time[sel].shape, np.nan)
    # Per sample flow - the last sample takes the last interval's flow
    return np.append(flow, flow[-1])


def apply_sensor_lag(record, lag, options):
    """Sensor lag correction of one (original, corrected) pair, profile by profile"""
    time_name = record.first_available(lag.time)
    depth_name = record.first_available(lag.depth)
    pitch_name = record.first_available(lag.pitch)
    missing = [] if record.has_data(lag.original) else [lag.original]
    if time_name is None:
        missing.append("time")
    if depth_name is None:
        missing.append("depth")
    if missing:
        log_warning(
            f"Missing {missing} - skipping sensor lag correction of {lag.corrected}",
            alert=_alert(record),
        )
        return
    if not record.profiles:
        log_warning(
            f"No profiles - skipping sensor lag correction of {lag.corrected}",
            alert=_alert(record),
        )
        return

    n_params = len(
        lag.default_parameters if lag.parameters == "auto" else lag.parameters
    )

    def profile_flow(p):
        if n_params == 1:
            return None
        return _flow(record, time_name, depth_name, pitch_name, p.samples)

    params = lag.parameters
    fit = "configured"
    if params == "auto":
        estimates = []
        for p1, p2 in _opposite_pairs(record.profiles):
            casts = []
            for p in (p1, p2):
                valid, full_rows = Profiles.validate_profile(
                    record[depth_name][p.samples],
                    record[time_name][p.samples],
                    record[lag.original][p.samples],
                    min_range=options.profile_min_range,
                    max_gap_ratio=options.profile_max_gap_ratio,
                )
                if not valid:
                    break
                flow = profile_flow(p)
                casts.append(
                    CTDCorrections.LagCast(
                        time=record[time_name][p.samples][full_rows],
                        depth=record[depth_name][p.samples][full_rows],
                        values=record[lag.original][p.samples][full_rows],
                        flow=None if flow is None else flow[full_rows],
                    )
                )
            if len(casts) != 2:
                continue
            guess = (
                (CTDCorrections.sensor_lag_first_guess,)
                if n_params == 1
                else lag.default_parameters
            )
            result = CTDCorrections.find_sensor_lag_params(casts[0], casts[1], guess)
            if result.converged:
                log_debug(
                    f"{lag.corrected} profiles {p1.index},{p2.index}: {result.params} area {result.area}"
                )
                estimates.append(result.params)
            else:
                log_warning(
                    f"Sensor lag fit for {lag.corrected} did not converge on profiles {p1.index},{p2.index}"
                )
        params = _estimate(estimates, lag.estimator, n_params)
        fit = "auto"
        if params is None:
            log_warning(
                f"No sensor lag estimate for {lag.corrected} - using {lag.default_parameters}",
                alert=_alert(record),
            )
            params = lag.default_parameters
            fit = "fallback"

    corrected = np.full(len(record), np.nan)
    for p in record.profiles:
        corrected[p.samples] = CTDCorrections.correct_sensor_lag(
            record[time_name][p.samples],
            record[lag.original][p.samples],
            params,
            profile_flow(p),
        )
    record[lag.corrected] = corrected
    record.attrs[lag.corrected] = {
        "source": lag.original,
        "sensor_lag_parameters": tuple(params),
        "sensor_lag_fit": fit,
    }
    log_info(f"{lag.corrected}: sensor lag parameters {tuple(params)} ({fit})")


def _ctd_cast(record, lag, names, sel, full_rows):
    time_name, depth_name, pitch_name = names
    return CTDCorrections.CTDCast(
        time=record[time_name][sel][full_rows],
        depth=record[depth_name][sel][full_rows],
        conductivity=record[lag.conductivity_original][sel][full_rows],
        temperature=record[lag.temperature_original][sel][full_rows],
        pressure=record[lag.pressure_original][sel][full_rows],
        pitch=record[pitch_name][sel][full_rows] if pitch_name else None,
    )


def fit_thermal_lag(record, lag, options, names):
    """Fits the thermal lag parameters on every valid pair of opposite profiles

    Returns:
        The combined estimate, or None when no pair gave one
    """
    time_name, depth_name, pitch_name = names
    guess = lag.default_parameters
    estimates = []
    for p1, p2 in _opposite_pairs(record.profiles):
        casts = []
        for p in (p1, p2):
            inputs = [
                record[time_name][p.samples],
                record[lag.conductivity_original][p.samples],
                record[lag.temperature_original][p.samples],
                record[lag.pressure_original][p.samples],
            ]
            if pitch_name:
                inputs.append(record[pitch_name][p.samples])
            valid, full_rows = Profiles.validate_profile(
                record[depth_name][p.samples],
                *inputs,
                min_range=options.profile_min_range,
                max_gap_ratio=options.profile_max_gap_ratio,
            )
            if not valid:
                log_debug(f"Profile {p.index} not valid for the thermal lag fit")
                break
            casts.append(_ctd_cast(record, lag, names, p.samples, full_rows))
        if len(casts) != 2:
            continue
        result = CTDCorrections.find_thermal_lag_params(
            casts[0], casts[1], guess, search=lag.search
        )
        if result.converged:
            log_debug(
                f"{lag.conductivity_corrected} profiles {p1.index},{p2.index}: {result.params} area {result.area}"
            )
            estimates.append(result.params)
        else:
            log_warning(
                f"Thermal lag fit for {lag.conductivity_corrected} did not converge on profiles {p1.index},{p2.index} (area {result.area})"
            )
    log_info(f"{len(estimates)} thermal lag estimates for {lag.conductivity_corrected}")
    return _estimate(estimates, lag.estimator, len(guess))


def apply_thermal_lag(record, lag, options):
    """Thermal lag correction of a conductivity/temperature pair, profile by profile"""
    time_name = record.first_available(lag.time)
    depth_name = record.first_available(lag.depth)
    pitch_name = record.first_available(lag.pitch)
    missing = [
        n
        for n in (
            lag.conductivity_original,
            lag.temperature_original,
            lag.pressure_original,
        )
        if not record.has_data(n)
    ]
    if time_name is None:
        missing.append("time")
    if depth_name is None:
        missing.append("depth")
    if missing:
        log_warning(
            f"Missing {missing} - skipping thermal lag correction of {lag.conductivity_corrected}",
            alert=_alert(record),
        )
        return
    if not record.profiles:
        log_warning(
            f"No profiles - skipping thermal lag correction of {lag.conductivity_corrected}",
            alert=_alert(record),
        )
        return
    if pitch_name is None:
        log_debug("No pitch - assuming vertical profiles for the thermal lag")
    names = (time_name, depth_name, pitch_name)

    params = lag.parameters
    fit = "configured"
    if params == "auto":
        params = fit_thermal_lag(record, lag, options, names)
        fit = "auto"
        if params is None:
            log_warning(
                f"No thermal lag estimate for {lag.conductivity_corrected} - using {lag.default_parameters}",
                alert=_alert(record),
            )
            params = lag.default_parameters
            fit = "fallback"

    cond_corrected = np.full(len(record), np.nan)
    temp_corrected = np.full(len(record), np.nan)
    for p in record.profiles:
        sel = p.samples
        temp_corrected[sel], cond_corrected[sel] = CTDCorrections.correct_thermal_lag(
            record[time_name][sel],
            record[depth_name][sel],
            record[lag.conductivity_original][sel],
            record[lag.temperature_original][sel],
            params,
            record[pitch_name][sel] if pitch_name else None,
        )
    record[lag.conductivity_corrected] = cond_corrected
    record[lag.temperature_corrected] = temp_corrected
    for name, source in (
        (lag.conductivity_corrected, lag.conductivity_original),
        (lag.temperature_corrected, lag.temperature_original),
    ):
        record.attrs[name] = {
            "source": source,
            "thermal_lag_parameters": tuple(params),
            "thermal_lag_fit": fit,
        }
    log_info(
        f"{lag.conductivity_corrected}/{lag.temperature_corrected}: thermal lag parameters {tuple(params)} ({fit})"
    )


def _derive(record, derived, func, what, **kwargs):
    missing = [v for v in derived.inputs.values() if not record.has_data(v)]
    if missing:
        log_warning(
            f"Missing {missing} - skipping {what} {derived.output}",
            alert=_alert(record),
        )
        return
    record[derived.output] = func(
        *(record[derived.inputs[k]] for k in derived.inputs), **kwargs
    )
    record.attrs[derived.output] = {"sources": tuple(derived.inputs.values())}


def derive_salinity(record, options):
    for derived in options.salinity_list:
        _derive(record, derived, Utils.salinity, "salinity")


def derive_density(record, options):
    for derived in options.density_list:
        _derive(record, derived, Utils.density, "density")


def derive_sound_velocity(record, options):
    position = {}
    if record.has_data("latitude") and record.has_data("longitude"):
        position = {"longitude": record["longitude"], "latitude": record["latitude"]}
    for derived in options.sound_velocity_list:
        _derive(record, derived, Utils.svel, "sound velocity", **position)


def process_glider_data(record, options):
    """Runs the corrections, segmentation and derivations over a merged record

    Input:
        record - MergedRecord from SensorMerge.merge_sensor_series
        options - ProcessingOptions

    Returns:
        The same record, with the new columns added
    """
    filter_pressure(record, options)
    derive_depth_ctd(record, options)
    segment_profiles(record, options)
    for lag in options.sensor_lag_list:
        apply_sensor_lag(record, lag, options)
    for lag in options.thermal_lag_list:
        apply_thermal_lag(record, lag, options)
    derive_salinity(record, options)
    derive_density(record, options)
    derive_sound_velocity(record, options)
    log_info(f"Processed {len(record)} samples: {record.names()}")
    return record
