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

"""Misc utility routines"""

# Important note - due to the wide spread use of Utils in other modules, no routines
# included in this file should rely on other processing modules beyond Globals and BaseLog
# - this is to reduce the chance of circular references when loading

import collections.abc
import importlib.metadata
import re
import sys
import warnings

import gsw
import numpy as np
import pandas as pd
import scipy
import scipy.interpolate
import seawater
import yaml

import Globals
from BaseLog import log_critical, log_info, log_warning

# Domain of the practical salinity scale and the EOS-80 equations of state
valid_salinity_range = (2.0, 42.0)
valid_temperature_range = (-2.5, 40.0)
valid_pressure_range = (-5.0, 11000.0)


def check_versions():
    """Checks and reports versions of various libraries"""

    log_info(
        "Glider processing version: %s; QC version: %s"
        % (Globals.glider_proc_version, Globals.quality_control_version)
    )

    log_info(
        "Python version %d.%d.%d"
        % (sys.version_info[0], sys.version_info[1], sys.version_info[2])
    )
    if sys.version_info < Globals.required_python_version:
        msg = "python %s or greater required" % str(Globals.required_python_version)
        log_critical(msg)
        raise RuntimeError(msg)

    for name, version, required in (
        ("Numpy", np.__version__, Globals.required_numpy_version),
        ("Scipy", scipy.__version__, Globals.required_scipy_version),
        (
            "seawater",
            importlib.metadata.version("seawater"),
            Globals.required_seawater_version,
        ),
    ):
        log_info("%s version %s" % (name, version))
        if normalize_version(version) < normalize_version(required):
            msg = "%s %s or greater required" % (name, required)
            log_critical(msg)
            raise RuntimeError(msg)


def normalize_version(v):
    """Normalizes version stamps"""
    if not isinstance(v, str):
        v = str(v)
    # drop any dev/post/rc suffix
    v = re.match(r"[0-9.]+", v).group(0).rstrip(".")
    return [int(x) for x in re.sub(r"(\.0+)*$", "", v).split(".")]


def load_yaml(yaml_file):
    """Loads a yaml document

    Returns:
        The loaded object - an empty dict for an empty document

    Raises:
        OSError, yaml.YAMLError
    """
    with open(yaml_file, "r") as fi:
        ret_val = yaml.safe_load(fi.read())
    return {} if ret_val is None else ret_val


#
# Unit conversions - all take and return numpy arrays
#


def nmea2deg(nmea):
    """Converts an array of NMEA ddmm.mmm (or dddmm.mmm) positions to decimal degrees

    Malformed entries (minutes at or over 60, more than 180 degrees, non-finite)
    are returned as NaN
    """
    nmea = np.asarray(nmea, dtype=float)
    with np.errstate(invalid="ignore"):
        deg = np.fix(nmea / 100.0)
        minutes = np.fmod(nmea, 100.0)
        bad = (
            ~np.isfinite(nmea) | (np.abs(minutes) >= 60.0) | (np.abs(deg) > 180.0)
        )
    return np.where(bad, np.nan, deg + minutes / 60.0)


def deg2rad(x):
    """Degrees to radians"""
    return np.deg2rad(np.asarray(x, dtype=float))


def rad2deg(x):
    """Radians to degrees"""
    return np.rad2deg(np.asarray(x, dtype=float))


def bar2dbar(x):
    """Pressure in bar to decibar"""
    return np.asarray(x, dtype=float) * 10.0


def cm2m(x):
    """Centimeters to meters"""
    return np.asarray(x, dtype=float) / 100.0


def sgdepth2pres(depth):
    """Reverses the Seaglider on board pressure to depth conversion

    Seaglider reports depth (cm) scaled from pressure by 0.685 psig/m.

    Returns:
        pressure in dbar
    """
    psig2m = 0.685
    bar2psi = 14.503774
    return np.asarray(depth, dtype=float) / (psig2m * bar2psi * 10.0)


kelvin_offset = 273.15

# Nominal glass CT tube coefficients, used when the calibration sheet omits them
sbect_default_cpcor = -9.5700e-08
sbect_default_ctcor = 3.2500e-06

sbect_temp_coef_names = ("t_g", "t_h", "t_i", "t_j")
sbect_cond_coef_names = ("c_g", "c_h", "c_i", "c_j", "ctcor", "cpcor")
wleco_coef_names = ("sf", "dc")


def calibration_coefs(coefs, names, defaults=None):
    """Orders calibration coefficients given as a sequence or a name -> value mapping

    Raises:
        ValueError for missing coefficients
    """
    defaults = defaults or {}
    if isinstance(coefs, collections.abc.Mapping):
        missing = [n for n in names if n not in coefs and n not in defaults]
        if missing:
            raise ValueError(f"Missing calibration coefficients {missing}")
        return tuple(float(coefs.get(n, defaults.get(n))) for n in names)
    coefs = [float(c) for c in np.atleast_1d(coefs)]
    if len(coefs) < len(names):
        coefs += [defaults[n] for n in names[len(coefs) :] if n in defaults]
    if len(coefs) != len(names):
        raise ValueError(
            f"Expected {len(names)} calibration coefficients {names}, got {len(coefs)}"
        )
    return tuple(coefs)


def calibrate_sbe_ct(temp_freq, cond_freq, pressure, temp_coefs, cond_coefs):
    """Seabird CT sail frequencies to engineering units

    Input:
        temp_freq, cond_freq - temperature and conductivity frequencies (Hz)
        pressure - dbar
        temp_coefs - t_g, t_h, t_i, t_j
        cond_coefs - c_g, c_h, c_i, c_j, ctcor, cpcor (ctcor and cpcor are optional)

    Returns:
        temperature (ITS-90 degC), conductivity (S/m)
    """
    t_g, t_h, t_i, t_j = calibration_coefs(temp_coefs, sbect_temp_coef_names)
    c_g, c_h, c_i, c_j, ctcor, cpcor = calibration_coefs(
        cond_coefs,
        sbect_cond_coef_names,
        {"ctcor": sbect_default_ctcor, "cpcor": sbect_default_cpcor},
    )
    temp_freq = np.asarray(temp_freq, dtype=float)
    cond_freq = np.asarray(cond_freq, dtype=float)
    pressure = np.asarray(pressure, dtype=float)

    with np.errstate(divide="ignore", invalid="ignore"):
        log_f = np.log(1000.0 / temp_freq)
        temperature = (
            1.0 / (t_g + (t_h + (t_i + t_j * log_f) * log_f) * log_f) - kelvin_offset
        )
        f_c = cond_freq / 1000.0
        conductivity = (
            0.1
            * (c_g + (c_h + (c_i + c_j * f_c) * f_c) * f_c * f_c)
            / (1.0 + ctcor * temperature + cpcor * pressure)
        )
    return temperature, conductivity


def calibrate_wleco(counts, coefs):
    """WET Labs ECO counts to engineering units - scale factor times counts above dark"""
    sf, dc = calibration_coefs(coefs, wleco_coef_names)
    return sf * (np.asarray(counts, dtype=float) - dc)


def calibrate_wleco_bbfl2(
    chlr_cnts, cdom_cnts, scat_cnts, chlr_coefs, cdom_coefs, scat_coefs
):
    """WET Labs ECO BB2FL triplet puck counts to ug/l chlorophyll, ppb CDOM and m-1 sr-1 scattering"""
    return (
        calibrate_wleco(chlr_cnts, chlr_coefs),
        calibrate_wleco(cdom_cnts, cdom_coefs),
        calibrate_wleco(scat_cnts, scat_coefs),
    )


def to_float_array(values):
    """Converts a sequence to a float array - entries that do not convert become NaN"""
    try:
        return np.array(values, dtype=float)
    except (TypeError, ValueError):
        return pd.to_numeric(pd.Series(list(values)), errors="coerce").to_numpy(
            dtype=float
        )


#
# Numerics
#


def ctr_1st_diff(y, x):
    """Compute centered first-difference approximation to the
    first derivative of y with respect to x.

    Input: two scalar arrays of equal length

    Returns: dy/dx

    Raises:
      ValueError for unequal or too short arrays
    """
    if len(y) != len(x):
        raise ValueError("Lengths of scalar arrays are unequal")
    if len(y) < 2:
        raise ValueError("At least two points are needed for a derivative")

    dydx = np.array(np.zeros(len(y)), float)
    end = len(x) - 1
    dydx[1:end] = (y[2:] - y[0 : end - 1]) / (x[2:] - x[0 : end - 1])
    dydx[0] = (y[1] - y[0]) / (x[1] - x[0])
    dydx[end] = (y[end] - y[end - 1]) / (x[end] - x[end - 1])
    return dydx


def nan_helper(y):
    """Helper to handle indices and logical indices of NaNs.

    Input:
        - y, 1d numpy array with possible NaNs
    Output:
        - nans, logical indices of NaNs
        - index, a function, with signature indices= index(logical_indices),
          to convert logical indices of NaNs to 'equivalent' indices
    Example:
        >>> # linear interpolation of NaNs
        >>> nans, x= nan_helper(y)
        >>> y[nans]= np.interp(x(nans), x(~nans), y[~nans])
    """
    return np.isnan(y), lambda z: z.nonzero()[0]


fill_methods = ("none", "previous", "next", "nearest", "linear")


def fill_invalid_values(x, y, method="linear", max_gap=None):
    """Fills the NaN entries of y (sampled at the increasing x)

    Input:
        x - sample positions (usually epoch seconds)
        y - values to fill
        method - one of fill_methods or a number to fill with
        max_gap - largest distance in x a fill may span; None for no limit.
                  For previous/next this is the distance to the source sample,
                  for linear/nearest the distance between the bounding samples

    Returns:
        A filled copy of y - entries that cannot be filled stay NaN
    """
    y = np.array(y, dtype=float)
    x = np.asarray(x, dtype=float)
    nans, index = nan_helper(y)

    if not isinstance(method, str):
        y[nans] = float(method)
        return y
    if method not in fill_methods:
        raise ValueError(f"Invalid fill method {method}")
    if method == "none" or not nans.any() or nans.all():
        return y

    good_i = index(~nans)
    bad_i = index(nans)

    if method == "previous":
        pos = np.searchsorted(good_i, bad_i) - 1
        ok = pos >= 0
        src_i = good_i[np.clip(pos, 0, None)]
        if max_gap is not None:
            ok &= (x[bad_i] - x[src_i]) <= max_gap
        y[bad_i[ok]] = y[src_i[ok]]
    elif method == "next":
        pos = np.searchsorted(good_i, bad_i)
        ok = pos < good_i.size
        src_i = good_i[np.clip(pos, None, good_i.size - 1)]
        if max_gap is not None:
            ok &= (x[src_i] - x[bad_i]) <= max_gap
        y[bad_i[ok]] = y[src_i[ok]]
    else:
        if good_i.size < 2:
            return y
        pos = np.searchsorted(good_i, bad_i)
        ok = (pos > 0) & (pos < good_i.size)
        if max_gap is not None:
            lo_i = good_i[np.clip(pos - 1, 0, None)]
            hi_i = good_i[np.clip(pos, None, good_i.size - 1)]
            ok &= (x[hi_i] - x[lo_i]) <= max_gap
        if method == "linear":
            vals = np.interp(x[bad_i], x[good_i], y[good_i])
        else:
            vals = scipy.interpolate.interp1d(
                x[good_i], y[good_i], kind="nearest", bounds_error=False
            )(x[bad_i])
        y[bad_i[ok]] = vals[ok]
    return y


def haversine(lat0, lon0, lat1, lon1):
    """Distance (meters) between positions, using the haversine method

    Works on scalars or numpy arrays
    """
    R = 6378137.0
    lat0 = np.deg2rad(lat0)
    lat1 = np.deg2rad(lat1)
    lon0 = np.deg2rad(lon0)
    lon1 = np.deg2rad(lon1)

    sdlat_2 = np.sin(0.5 * (lat0 - lat1))
    sdlon_2 = np.sin(0.5 * (lon0 - lon1))

    a = sdlat_2 * sdlat_2 + np.cos(lat0) * np.cos(lat1) * sdlon_2 * sdlon_2
    a = np.clip(a, 0.0, 1.0)
    return 2.0 * R * np.arcsin(np.sqrt(a))


def cumulative_distance(latitude, longitude):
    """Distance over ground (km) along a track

    Rows without a valid position carry the distance of the previous valid row
    (NaN before the first valid position)
    """
    latitude = np.asarray(latitude, dtype=float)
    longitude = np.asarray(longitude, dtype=float)
    dist = np.full(latitude.shape, np.nan)
    valid_i = np.flatnonzero(np.isfinite(latitude) & np.isfinite(longitude))
    if valid_i.size == 0:
        return dist
    steps = haversine(
        latitude[valid_i[:-1]],
        longitude[valid_i[:-1]],
        latitude[valid_i[1:]],
        longitude[valid_i[1:]],
    )
    dist[valid_i] = np.concatenate(([0.0], np.cumsum(steps))) / 1000.0
    return fill_invalid_values(np.arange(dist.size), dist, "previous")


#
# Seawater properties - inputs outside the valid domain come back as NaN
#


def _in_range(v, valid_range):
    with np.errstate(invalid="ignore"):
        return np.isfinite(v) & (v >= valid_range[0]) & (v <= valid_range[1])


def _valid_inputs(temperature, pressure, *others):
    ok = _in_range(temperature, valid_temperature_range) & _in_range(
        pressure, valid_pressure_range
    )
    for o in others:
        ok &= np.isfinite(o)
    return ok


def salinity(conductivity, temperature, pressure):
    """Practical salinity from conductivity (S/m), temperature (degC ITS-90) and pressure (dbar)"""
    cond, temp, pres = np.broadcast_arrays(
        *(np.asarray(v, dtype=float) for v in (conductivity, temperature, pressure))
    )
    salin = np.full(cond.shape, np.nan)
    ok = _valid_inputs(temp, pres, cond) & (cond >= 0.0)
    if ok.any():
        with np.errstate(all="ignore"), warnings.catch_warnings():
            warnings.simplefilter("ignore")
            salin[ok] = seawater.salt(
                cond[ok] / (seawater.constants.c3515 / 10.0), temp[ok], pres[ok]
            )
    salin[~_in_range(salin, valid_salinity_range)] = np.nan
    return salin


def density(salinity_v, temperature, pressure):
    """In-situ density (kg/m^3) using the EOS-80 equation of state"""
    salin, temp, pres = np.broadcast_arrays(
        *(np.asarray(v, dtype=float) for v in (salinity_v, temperature, pressure))
    )
    dens = np.full(salin.shape, np.nan)
    ok = _valid_inputs(temp, pres) & _in_range(salin, valid_salinity_range)
    if ok.any():
        dens[ok] = seawater.dens(salin[ok], temp[ok], pres[ok])
    return dens


def svel(salinity_v, temperature, pressure, longitude=None, latitude=None):
    """Sound velocity (m/s)

    Uses the gsw toolbox when a position is supplied, EOS-80 otherwise
    """
    salin, temp, pres = np.broadcast_arrays(
        *(np.asarray(v, dtype=float) for v in (salinity_v, temperature, pressure))
    )
    l_svel = np.full(salin.shape, np.nan)
    ok = _valid_inputs(temp, pres) & _in_range(salin, valid_salinity_range)
    if longitude is not None and latitude is not None:
        lon, lat = np.broadcast_arrays(
            np.asarray(longitude, dtype=float), np.asarray(latitude, dtype=float)
        )
        lon = np.broadcast_to(lon, salin.shape)
        lat = np.broadcast_to(lat, salin.shape)
        ok &= np.isfinite(lon) & np.isfinite(lat)
        if ok.any():
            salinity_absolute = gsw.SA_from_SP(salin[ok], pres[ok], lon[ok], lat[ok])
            cons_temp = gsw.CT_from_t(salinity_absolute, temp[ok], pres[ok])
            l_svel[ok] = gsw.sound_speed(salinity_absolute, cons_temp, pres[ok])
    elif ok.any():
        l_svel[ok] = seawater.svel(salin[ok], temp[ok], pres[ok])
    return l_svel


def depth_from_pressure(pressure, latitude):
    """Depth (m, positive down) from pressure (dbar) and latitude (degrees)"""
    pres = np.asarray(pressure, dtype=float)
    lat = np.broadcast_to(np.asarray(latitude, dtype=float), pres.shape)
    depth = np.full(pres.shape, np.nan)
    ok = _in_range(pres, valid_pressure_range) & _in_range(lat, (-90.0, 90.0))
    if ok.any():
        depth[ok] = -gsw.z_from_p(pres[ok], lat[ok])
    return depth
