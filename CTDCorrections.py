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

"""CTD corrections - sensor lag, conductivity cell thermal lag and pressure filtering

Lag parameter fits are built around pure objective functions
(params -> area between the two casts of a profile pair), so the search strategy
can be swapped without touching the correction math.
"""

import collections
import dataclasses
import itertools

import numpy as np
import scipy.integrate
import scipy.optimize
import scipy.signal

import Utils
from BaseLog import log_debug, log_warning

# Flow past the sensor is related to the glider speed through this polynomial
# (first order choice, Morison et al. 1994)
speed_factor_polynom = [0.00, 0.03, 0.45]

sensor_lag_first_guess = 0.5
sensor_lag_bounds = (0.0, 16.0)

SearchResult = collections.namedtuple("SearchResult", ("params", "area", "converged"))


@dataclasses.dataclass
class LagCast:
    """One cast of a variable with a first order response"""

    time: np.ndarray
    depth: np.ndarray
    values: np.ndarray
    flow: np.ndarray | None = None


@dataclasses.dataclass
class CTDCast:
    """One cast of unpumped CTD data"""

    time: np.ndarray
    depth: np.ndarray
    conductivity: np.ndarray
    temperature: np.ndarray
    pressure: np.ndarray
    pitch: np.ndarray | None = None

    @property
    def duration(self):
        return float(np.nanmax(self.time) - np.nanmin(self.time))


#
# Flow speed
#


def surge_speed(time, depth, pitch=None):
    """Speed along the glider path from the rate of depth change and the pitch (radians)

    Returns one value per sample interval
    """
    time = np.asarray(time, dtype=float)
    if pitch is None:
        pitch = np.pi / 2.0  # vertical profile
    pitch = np.broadcast_to(np.asarray(pitch, dtype=float), time.shape)
    with np.errstate(divide="ignore", invalid="ignore"):
        vertical_velocity = np.diff(np.asarray(depth, dtype=float)) / np.diff(time)
        return np.abs(vertical_velocity / np.sin(pitch[:-1]))


def flow_speed(time, depth, pitch=None):
    """Flow speed past the sensor, one value per sample interval

    Intervals without a usable speed take the median flow of the others
    """
    surge = surge_speed(time, depth, pitch)
    flow = np.polyval(speed_factor_polynom, surge) * surge
    bad = ~np.isfinite(flow) | (flow <= 0.0)
    if bad.all():
        return np.full(flow.shape, np.nan)
    flow[bad] = np.median(flow[~bad])
    return flow


def _increasing(time_v):
    """Mask keeping only samples later than every sample before them"""
    if time_v.size == 0:
        return np.zeros(0, dtype=bool)
    running = np.maximum.accumulate(time_v)
    return np.concatenate(([True], np.diff(running) > 0))


#
# Sensor lag
#


def _interp_extrap(x, xp, fp):
    """Linear interpolation that is exact at the knots, extended linearly beyond them"""
    out = np.interp(x, xp, fp)
    left = x < xp[0]
    right = x > xp[-1]
    if left.any():
        slope = (fp[1] - fp[0]) / (xp[1] - xp[0])
        out[left] = fp[0] + slope * (x[left] - xp[0])
    if right.any():
        slope = (fp[-1] - fp[-2]) / (xp[-1] - xp[-2])
        out[right] = fp[-1] + slope * (x[right] - xp[-1])
    return out


def correct_sensor_lag(timestamp, raw, params, flow=None):
    """Corrects the first order response of a sensor

    The corrected value at t is the raw signal evaluated at t + tau, extrapolating
    linearly past the last sample.  For a piecewise linear signal this is
    raw(t) + tau * d(raw)/dt, and tau = 0 gives back raw.

    Input:
        timestamp - sample times (s)
        raw - sensor values
        params - (tau,) or (tau_offset, tau_slope) with tau = tau_offset + tau_slope / flow
        flow - flow speed past the sensor per sample, for the two parameter form

    Returns:
        corrected values, NaN where the time or raw value is invalid
    """
    timestamp = np.asarray(timestamp, dtype=float)
    raw = np.asarray(raw, dtype=float)
    params = np.atleast_1d(np.asarray(params, dtype=float))
    if params.size == 1:
        tau = np.full(timestamp.shape, params[0])
    elif params.size == 2:
        if flow is None:
            raise ValueError("Flow speed is needed for the flow dependent sensor lag")
        with np.errstate(divide="ignore", invalid="ignore"):
            tau = params[0] + params[1] / np.asarray(flow, dtype=float)
    else:
        raise ValueError(f"Sensor lag takes 1 or 2 parameters - got {params.size}")

    cor = np.full(raw.shape, np.nan)
    valid = (
        np.isfinite(timestamp)
        & (timestamp > 0)
        & np.isfinite(raw)
        & np.isfinite(np.broadcast_to(tau, raw.shape))
    )
    if not valid.any():
        return cor

    t_val = timestamp[valid]
    raw_val = raw[valid]
    t_unique, i_unique = np.unique(t_val, return_index=True)
    if t_unique.size < 2:
        return cor
    if t_unique.size < t_val.size:
        # Repeated timestamps must report the same value
        raw_at_unique = raw_val[i_unique][np.searchsorted(t_unique, t_val)]
        if np.any(raw_at_unique != raw_val):
            log_warning("Inconsistent values at repeated timestamps - using the first")
    cor[valid] = _interp_extrap(t_val + tau[valid], t_unique, raw_val[i_unique])
    return cor


#
# Thermal lag
#


def correct_thermal_lag(time, depth, cond_inside, temp_outside, params, pitch=None):
    """Corrects the thermal inertia of an unpumped conductivity cell

    Input:
        time, depth - sample times (s) and depths (m)
        cond_inside - conductivity as measured inside the cell (S/m)
        temp_outside - temperature of the water outside the cell (degC)
        params - (alpha, tau) for a constant flow past the cell or
                 (alpha_offset, alpha_slope, tau_offset, tau_slope) with
                 alpha = alpha_offset + alpha_slope / flow and
                 tau = tau_offset + tau_slope / sqrt(flow)
        pitch - glider pitch (radians), vertical when not given; only the flow
                dependent form uses depth and pitch

    Returns:
        temp_inside - temperature inside the cell
        cond_outside - conductivity of the water outside the cell
        Both are NaN where any input is invalid
    """
    time = np.asarray(time, dtype=float)
    depth = np.asarray(depth, dtype=float)
    cond_inside = np.asarray(cond_inside, dtype=float)
    temp_outside = np.asarray(temp_outside, dtype=float)
    if pitch is None:
        pitch = np.pi / 2.0
    pitch = np.broadcast_to(np.asarray(pitch, dtype=float), time.shape)
    params = tuple(float(p) for p in params)
    if len(params) not in (2, 4):
        raise ValueError(f"Thermal lag takes 2 or 4 parameters - got {len(params)}")

    valid = (
        np.isfinite(time)
        & (time > 0)
        & np.isfinite(cond_inside)
        & np.isfinite(temp_outside)
    )
    if len(params) == 4:
        valid &= np.isfinite(depth) & np.isfinite(pitch)
    valid_i = np.flatnonzero(valid)
    valid_i = valid_i[_increasing(time[valid_i])]

    temp_inside = np.full(time.shape, np.nan)
    cond_outside = np.full(time.shape, np.nan)
    if valid_i.size < 2:
        return temp_inside, cond_outside

    time_val = time[valid_i]
    temp_val = temp_outside[valid_i]
    cond_val = cond_inside[valid_i]
    dtime = np.diff(time_val)

    if len(params) == 2:
        alpha = np.full(dtime.shape, params[0])
        tau = np.full(dtime.shape, params[1])
    else:
        flow = flow_speed(time_val, depth[valid_i], pitch[valid_i])
        alpha = params[0] + params[1] / flow
        tau = params[2] + params[3] / np.sqrt(flow)

    nyquist_freq = 0.5 / dtime
    coefa = 4.0 * nyquist_freq * alpha * tau / (1.0 + 4.0 * nyquist_freq * tau)
    coefb = 1.0 - 2.0 * (4.0 * nyquist_freq * tau) / (1.0 + 4.0 * nyquist_freq * tau)

    # Sensitivity of conductivity to temperature
    dcond_dtemp = 0.088 + 0.0006 * temp_val
    dtemp = np.diff(temp_val)

    cond_correction = np.zeros(time_val.shape)
    temp_correction = np.zeros(time_val.shape)
    for n in range(time_val.size - 1):
        cond_correction[n + 1] = (
            -coefb[n] * cond_correction[n] + coefa[n] * dcond_dtemp[n] * dtemp[n]
        )
        temp_correction[n + 1] = -coefb[n] * temp_correction[n] + coefa[n] * dtemp[n]

    temp_inside[valid_i] = temp_val - temp_correction
    cond_outside[valid_i] = cond_val + cond_correction
    return temp_inside, cond_outside


#
# Profile pair objectives
#


def _unique_profile(x, y):
    """Drops invalid points, sorts by y and averages x over repeated y"""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    valid = np.isfinite(x) & np.isfinite(y)
    if np.count_nonzero(valid) < 2:
        return None, None
    y_u, inverse = np.unique(y[valid], return_inverse=True)
    if y_u.size < 2:
        return None, None
    x_u = np.bincount(inverse, weights=x[valid]) / np.bincount(inverse)
    return x_u, y_u


def profile_area(x1, y1, x2, y2):
    """Area between the profiles x1(y1) and x2(y2) over their common y range

    y is the vertical coordinate.  Returns NaN if the profiles do not overlap.
    """
    x1, y1 = _unique_profile(x1, y1)
    x2, y2 = _unique_profile(x2, y2)
    if x1 is None or x2 is None:
        return np.nan
    y_min = max(y1[0], y2[0])
    y_max = min(y1[-1], y2[-1])
    if not y_max > y_min:
        return np.nan
    y_grid = np.union1d(y1, y2)
    y_grid = y_grid[(y_grid >= y_min) & (y_grid <= y_max)]
    diff = np.abs(np.interp(y_grid, y1, x1) - np.interp(y_grid, y2, x2))
    return float(scipy.integrate.trapezoid(diff, y_grid))


def sensor_lag_objective(cast1, cast2):
    """Area between the lag corrected casts as a function of the lag parameters"""

    def objective(params):
        cor1 = correct_sensor_lag(cast1.time, cast1.values, params, cast1.flow)
        cor2 = correct_sensor_lag(cast2.time, cast2.values, params, cast2.flow)
        return profile_area(cor1, cast1.depth, cor2, cast2.depth)

    return objective


def thermal_lag_objective(cast1, cast2):
    """Area between the salinity profiles of the thermal lag corrected casts"""

    def cast_salinity(cast, params):
        _, cond_outside = correct_thermal_lag(
            cast.time, cast.depth, cast.conductivity, cast.temperature, params, cast.pitch
        )
        return Utils.salinity(cond_outside, cast.temperature, cast.pressure)

    def objective(params):
        return profile_area(
            cast_salinity(cast1, params),
            cast1.depth,
            cast_salinity(cast2, params),
            cast2.depth,
        )

    return objective


#
# Search strategies - each takes (objective, bounds, guess, tau_index, **kwargs)
#


def _finite_area(objective, params):
    area = objective(np.asarray(params, dtype=float))
    return area if np.isfinite(area) else np.inf


def _pick_best(candidates, tau_index):
    """Smallest area wins - areas equal to rounding go to the smallest tau"""
    areas = np.array([area for _, area in candidates])
    best_area = np.min(areas)
    if not np.isfinite(best_area):
        return candidates[0][0], np.nan
    ties = [
        params
        for params, area in candidates
        if np.isclose(area, best_area, rtol=1e-9, atol=1e-12)
    ]
    best = min(ties, key=lambda p: p[tau_index])
    return best, float(best_area)


def grid_search(objective, bounds, guess=None, tau_index=-1, grid_points=11):
    """Evaluates the objective over a regular grid spanning the bounds"""
    axes = [np.linspace(lo, hi, grid_points) for lo, hi in bounds]
    candidates = [
        (np.array(p), _finite_area(objective, p)) for p in itertools.product(*axes)
    ]
    params, area = _pick_best(candidates, tau_index)
    return SearchResult(tuple(params), area, bool(np.isfinite(area)))


def nelder_mead_search(objective, bounds, guess, tau_index=-1, **kwargs):
    """Bounded Nelder-Mead simplex search starting from guess"""
    lower = np.array([b[0] for b in bounds])
    upper = np.array([b[1] for b in bounds])
    x0 = np.clip(np.asarray(guess, dtype=float), lower, upper)
    start_area = _finite_area(objective, x0)
    result = scipy.optimize.minimize(
        lambda p: _finite_area(objective, p),
        x0,
        method="Nelder-Mead",
        bounds=list(bounds),
        options={"xatol": 1e-4, "fatol": 1e-6, "maxiter": 400 * x0.size},
    )
    simplex, simplex_areas = result.final_simplex
    params, area = _pick_best(list(zip(simplex, simplex_areas)), tau_index)
    converged = bool(result.success) and np.isfinite(area) and area <= start_area
    if not converged:
        log_debug(f"Nelder-Mead did not converge: {result.message}")
    return SearchResult(tuple(params), area, converged)


def golden_search(objective, bounds, guess=None, tau_index=0, **kwargs):
    """Bounded scalar search - for single parameter objectives"""
    if len(bounds) != 1:
        raise ValueError("golden search handles a single parameter")
    result = scipy.optimize.minimize_scalar(
        lambda p: _finite_area(objective, [p]),
        bounds=bounds[0],
        method="bounded",
        options={"xatol": 1e-4},
    )
    area = float(result.fun) if np.isfinite(result.fun) else np.nan
    return SearchResult((float(result.x),), area, bool(result.success) and np.isfinite(area))


search_funcs = {
    "grid": grid_search,
    "nelder-mead": nelder_mead_search,
    "golden": golden_search,
}


def find_sensor_lag_params(
    cast1, cast2, guess=(sensor_lag_first_guess,), bounds=None, search=None, **kwargs
):
    """Finds the sensor lag parameters that best match a pair of opposite casts

    Input:
        cast1, cast2 - LagCast of each profile; the flow dependent form needs their flow
        guess - (tau,) or (tau_offset, tau_slope)
        bounds - (min, max) per parameter, sensor_lag_bounds by default
        search - one of search_funcs; golden for a single parameter,
                 nelder-mead otherwise

    Returns:
        SearchResult
    """
    guess = tuple(float(g) for g in guess)
    if bounds is None:
        bounds = [sensor_lag_bounds] * len(guess)
    if search is None:
        search = "golden" if len(guess) == 1 else "nelder-mead"
    return search_funcs[search](
        sensor_lag_objective(cast1, cast2), list(bounds), guess, 0, **kwargs
    )


def thermal_lag_bounds(cast1, cast2, n_params):
    """Search limits for the thermal lag parameters of a profile pair"""
    eps = np.finfo(float).eps
    max_time = max(cast1.duration, cast2.duration)
    if n_params == 2:
        return [(eps, 1.0), (eps, max_time)]
    return [(eps, 2.0), (eps, 1.0), (eps, max_time), (eps, max_time / 2.0)]


def find_thermal_lag_params(cast1, cast2, guess, bounds=None, search="nelder-mead", **kwargs):
    """Finds the thermal lag parameters minimizing the area between the salinity
    profiles of a pair of opposite casts

    Input:
        cast1, cast2 - CTDCast of each profile
        guess - first guess; its length selects the constant (2) or flow dependent (4) model
        bounds - (min, max) per parameter; defaults to thermal_lag_bounds
        search - one of search_funcs

    Returns:
        SearchResult
    """
    if bounds is None:
        bounds = thermal_lag_bounds(cast1, cast2, len(guess))
    tau_index = 1 if len(guess) == 2 else 2
    return search_funcs[search](
        thermal_lag_objective(cast1, cast2), bounds, guess, tau_index, **kwargs
    )


#
# Pressure filter
#


def seabird_filter(signal_v, time_constant, sampling_period):
    """Two pass low pass filter from the Seabird data processing manual

    The signal is run forward then backward through
    y[n] = a * (x[n] + x[n - 1]) - b * y[n - 1], starting from y[0] = x[0]
    """
    signal_v = np.asarray(signal_v, dtype=float)
    if signal_v.size < 2:
        return signal_v.copy()
    magic_number = 2.0 * time_constant / sampling_period
    a = 1.0 / (1.0 + magic_number)
    b = (1.0 - magic_number) * a
    out = signal_v
    for _ in range(2):
        out, _ = scipy.signal.lfilter(
            [a, a], [1.0, b], out, zi=[out[0] * (1.0 - a)]
        )
        out = out[::-1]
    return out


def filter_pressure(time_v, pressure_v, time_constant):
    """Applies the Seabird filter to the valid samples of a pressure series"""
    time_v = np.asarray(time_v, dtype=float)
    pressure_v = np.asarray(pressure_v, dtype=float)
    filtered = np.full(pressure_v.shape, np.nan)
    valid_i = np.flatnonzero(np.isfinite(time_v) & np.isfinite(pressure_v))
    valid_i = valid_i[_increasing(time_v[valid_i])]
    if valid_i.size < 2:
        filtered[valid_i] = pressure_v[valid_i]
        return filtered
    sampling_period = np.median(np.diff(time_v[valid_i]))
    filtered[valid_i] = seabird_filter(pressure_v[valid_i], time_constant, sampling_period)
    return filtered
