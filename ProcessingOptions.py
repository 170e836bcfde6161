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

"""Processing options

The per-vehicle mapping of logical quantities (time, position, depth, ctd, ...) onto
raw channel names, the unit conversions applied while merging and the correction
parameter sets.  Options are supplied as plain nested dicts (usually loaded from yaml),
validated against a fixed schema and frozen - downstream stages only ever read them.
"""

import copy
import dataclasses
import types
import typing

import numpy as np

import Globals
import Utils
from BaseLog import log_debug, log_info


class ConfigurationError(ValueError):
    """Missing or invalid entry in the processing or qc configuration"""


#
# Conversion registry
#

conversion_funcs: dict[str, typing.Callable] = {}


def register_conversion(name):
    """Decorator that adds an array -> array function to the conversion registry"""

    def decorator(func):
        conversion_funcs[name] = func
        return func

    return decorator


for _name, _func in (
    ("identity", Utils.to_float_array),
    ("nmea2deg", Utils.nmea2deg),
    ("deg2rad", Utils.deg2rad),
    ("rad2deg", Utils.rad2deg),
    ("bar2dbar", Utils.bar2dbar),
    ("cm2m", Utils.cm2m),
    ("sgdepth2pres", Utils.sgdepth2pres),
):
    register_conversion(_name)(_func)


#
# Calibration registry
#


@dataclasses.dataclass(frozen=True)
class Calibration:
    """A manufacturer calibration applied to the fields of a channel choice"""

    func: typing.Callable  # (field -> values, field -> coefficients) -> field -> values
    inputs: tuple  # fields that must be in the choice
    calibrated: tuple  # fields that need coefficients and are replaced


calibration_funcs: dict[str, Calibration] = {}


def register_calibration(name, inputs, calibrated):
    """Decorator that adds a calibration to the calibration registry"""

    def decorator(func):
        calibration_funcs[name] = Calibration(func, tuple(inputs), tuple(calibrated))
        return func

    return decorator


@register_calibration(
    "sbe_ct", ("temperature", "conductivity", "pressure"), ("temperature", "conductivity")
)
def _calibrate_sbe_ct(values_d, coefs_d):
    temperature, conductivity = Utils.calibrate_sbe_ct(
        values_d["temperature"],
        values_d["conductivity"],
        values_d["pressure"],
        coefs_d["temperature"],
        coefs_d["conductivity"],
    )
    return {"temperature": temperature, "conductivity": conductivity}


@register_calibration(
    "wleco_bbfl2",
    ("chlorophyll", "cdom", "scatter_650"),
    ("chlorophyll", "cdom", "scatter_650"),
)
def _calibrate_wleco_bbfl2(values_d, coefs_d):
    fields = ("chlorophyll", "cdom", "scatter_650")
    return dict(
        zip(
            fields,
            Utils.calibrate_wleco_bbfl2(
                *[values_d[f] for f in fields], *[coefs_d[f] for f in fields]
            ),
        )
    )


#
# Schema
#

# category -> {field: merged column name}
category_fields = {
    "time": {"time": "time"},
    "position": {"latitude": "latitude", "longitude": "longitude"},
    "depth": {"depth": "depth"},
    "attitude": {"roll": "roll", "pitch": "pitch"},
    "heading": {"heading": "heading"},
    "waypoint": {"latitude": "waypoint_latitude", "longitude": "waypoint_longitude"},
    "water_velocity": {
        "velocity_eastward": "water_velocity_eastward",
        "velocity_northward": "water_velocity_northward",
    },
    "ctd": {
        "conductivity": "conductivity",
        "temperature": "temperature",
        "pressure": "pressure",
    },
    "oxygen": {
        "oxygen_concentration": "oxygen_concentration",
        "oxygen_saturation": "oxygen_saturation",
        "temperature": "temperature_oxygen",
    },
    "optics": {
        "chlorophyll": "chlorophyll",
        "turbidity": "turbidity",
        "cdom": "cdom",
        "scatter_650": "scatter_650",
        "backscatter_700": "backscatter_700",
        "temperature": "temperature_optics",
    },
}

# Keys a channel choice may carry besides the category fields
choice_keys = ("time", "conversion", "calibration", "status", "status_good", "status_bad")

alignment_methods = ("exact", "previous", "nearest", "linear")

# Digital state channels are matched, physical channels interpolated
default_alignment = {
    "time": "exact",
    "position": "linear",
    "depth": "linear",
    "attitude": "linear",
    "heading": "previous",
    "waypoint": "previous",
    "water_velocity": "previous",
    "ctd": "linear",
    "oxygen": "linear",
    "optics": "linear",
}

category_keys = ("choices", "alignment", "alignment_max_gap", "filling", "filling_max_gap")

thermal_lag_first_guess = (0.0135, 0.0264, 7.1499, 2.7858)
# The constant (alpha, tau) first guess is the flow dependent guess at 0.4 m/s
_nominal_flow = 0.4
thermal_lag_constant_first_guess = (
    thermal_lag_first_guess[0] + thermal_lag_first_guess[1] / _nominal_flow,
    thermal_lag_first_guess[2] + thermal_lag_first_guess[3] / np.sqrt(_nominal_flow),
)

search_strategies = ("nelder-mead", "grid")
estimators = {"median": np.nanmedian, "mean": np.nanmean}
reducers = ("median", "mean")


@dataclasses.dataclass(frozen=True)
class ChannelChoice:
    """One way of satisfying a category from raw channels"""

    fields: types.MappingProxyType  # field -> raw channel name
    conversions: types.MappingProxyType  # field -> conversion name
    calibration: str | None = None
    time: str | None = None
    status: str | None = None
    status_good: tuple = ()
    status_bad: tuple = ()

    @property
    def channels(self):
        """All raw channels this choice reads"""
        ret_val = list(self.fields.values())
        if self.time:
            ret_val.append(self.time)
        if self.status:
            ret_val.append(self.status)
        return ret_val


@dataclasses.dataclass(frozen=True)
class CategoryOptions:
    """Channel choices and alignment/fill policy for one logical category"""

    name: str
    columns: types.MappingProxyType  # field -> merged column name
    choices: tuple
    alignment: str = "linear"
    alignment_max_gap: float | None = None
    filling: str = "none"
    filling_max_gap: float | None = None

    @property
    def time_column(self):
        """Name of the merged column holding this category's own clock"""
        return f"time_{self.name}"


@dataclasses.dataclass(frozen=True)
class SensorLagOptions:
    """Sensor lag correction of original into corrected"""

    corrected: str
    original: str
    parameters: typing.Any  # "auto", (tau,) or (tau_offset, tau_slope)
    time: tuple = ("time_ctd", "time")
    depth: tuple = ("depth_ctd", "depth")
    pitch: tuple = ("pitch",)
    estimator: str = "median"
    default_parameters: tuple = (0.0,)


@dataclasses.dataclass(frozen=True)
class ThermalLagOptions:
    """Thermal lag correction of a conductivity/temperature pair"""

    conductivity_corrected: str
    temperature_corrected: str
    conductivity_original: str
    temperature_original: str
    pressure_original: str
    parameters: typing.Any  # "auto", (alpha, tau) or the four flow dependent constants
    time: tuple = ("time_ctd", "time")
    depth: tuple = ("depth_ctd", "depth")
    pitch: tuple = ("pitch",)
    constant_flow: bool = True
    estimator: str = "median"
    search: str = "nelder-mead"
    default_parameters: tuple | None = None


@dataclasses.dataclass(frozen=True)
class DerivedOptions:
    """A derived variable and the variables it is computed from"""

    output: str
    inputs: types.MappingProxyType  # role -> variable name


@dataclasses.dataclass(frozen=True)
class GriddingOptions:
    """Choices for the coordinates and variables of the gridded product"""

    profile_list: tuple = ("profile_index",)
    time_list: tuple = ("time",)
    position_list: tuple = (
        types.MappingProxyType({"latitude": "latitude", "longitude": "longitude"}),
    )
    depth_list: tuple = ("depth", "depth_ctd")
    depth_step: float = 1.0
    variable_list: tuple = ()
    reducer: str = "median"


@dataclasses.dataclass(frozen=True)
class ProcessingOptions:
    """Complete, validated set of options for one vehicle type"""

    vehicle: str
    categories: types.MappingProxyType  # category name -> CategoryOptions, in merge order
    timeline_mode: str = "first"
    timeline_boards: tuple = ()
    time_filling: bool = True
    time_filling_max_gap: float | None = None
    pressure_filtering: bool = True
    pressure_filter_constant: float = 4.0
    depth_ctd_derivation: bool = True
    profiling_list: tuple = ()
    profile_min_range: float = 10.0
    profile_max_gap_ratio: float = 0.8
    profile_min_duration: float = 0.0
    transect_max_gap: float | None = None
    sensor_lag_list: tuple = ()
    thermal_lag_list: tuple = ()
    salinity_list: tuple = ()
    density_list: tuple = ()
    sound_velocity_list: tuple = ()
    gridding: GriddingOptions = dataclasses.field(default_factory=GriddingOptions)
    # raw channel -> calibration coefficients, a tuple or a name -> value mapping
    calibration_parameters: types.MappingProxyType = dataclasses.field(
        default_factory=lambda: types.MappingProxyType({})
    )


#
# Vehicle defaults - plain dicts in the same form as a yaml options file
#

_common_processing_d = {
    "timeline_mode": "first",
    "calibration_parameters": {},
    "time_filling": True,
    "time_filling_max_gap": None,
    "pressure_filtering": True,
    "pressure_filter_constant": 4.0,
    "depth_ctd_derivation": True,
    "profiling_list": [
        {"depth": "depth_ctd", "time": "time_ctd"},
        {"depth": "depth_ctd", "time": "time"},
        {"depth": "depth", "time": "time"},
    ],
    "profile_min_range": 10.0,
    "profile_max_gap_ratio": 0.8,
    "profile_min_duration": 0.0,
    "transect_max_gap": None,
    "sensor_lag_list": [],
    "thermal_lag_list": [
        {
            "conductivity_corrected": "conductivity_corrected_thermal",
            "temperature_corrected": "temperature_corrected_thermal",
            "conductivity_original": "conductivity",
            "temperature_original": "temperature",
            "pressure_original": "pressure",
            "parameters": "auto",
        }
    ],
    "salinity_list": [
        {
            "salinity": "salinity",
            "conductivity": "conductivity",
            "temperature": "temperature",
            "pressure": "pressure",
        },
        {
            "salinity": "salinity_corrected_thermal",
            "conductivity": "conductivity",
            "temperature": "temperature_corrected_thermal",
            "pressure": "pressure",
        },
    ],
    "density_list": [
        {
            "density": "density",
            "salinity": "salinity",
            "temperature": "temperature",
            "pressure": "pressure",
        },
        {
            "density": "density_corrected_thermal",
            "salinity": "salinity_corrected_thermal",
            "temperature": "temperature",
            "pressure": "pressure",
        },
    ],
    "sound_velocity_list": [
        {
            "sound_velocity": "sound_velocity",
            "salinity": "salinity",
            "temperature": "temperature",
            "pressure": "pressure",
        },
    ],
    "gridding": {
        "depth_step": 1.0,
        "reducer": "median",
        "variable_list": [
            "conductivity",
            "temperature",
            "pressure",
            "chlorophyll",
            "turbidity",
            "cdom",
            "backscatter_700",
            "oxygen_concentration",
            "oxygen_saturation",
            "conductivity_corrected_thermal",
            "temperature_corrected_thermal",
            "salinity",
            "density",
            "salinity_corrected_thermal",
            "density_corrected_thermal",
            "sound_velocity",
        ],
    },
}

vehicle_defaults_d = {
    "slocum": {
        "categories": {
            "time": [{"time": "m_present_time"}, {"time": "sci_m_present_time"}],
            "position": {
                "filling": "linear",
                "choices": [
                    {
                        "longitude": "m_gps_lon",
                        "latitude": "m_gps_lat",
                        "conversion": "nmea2deg",
                        "status": "m_gps_status",
                        "status_good": [0],
                    },
                    {"longitude": "m_lon", "latitude": "m_lat", "conversion": "nmea2deg"},
                ],
            },
            "depth": {"filling": "linear", "choices": [{"depth": "m_depth"}]},
            "attitude": {
                "filling": "linear",
                "choices": [{"roll": "m_roll", "pitch": "m_pitch"}],
            },
            "heading": {"filling": "previous", "choices": [{"heading": "m_heading"}]},
            "waypoint": {
                "filling": "previous",
                "choices": [
                    {
                        "longitude": "c_wpt_lon",
                        "latitude": "c_wpt_lat",
                        "conversion": "nmea2deg",
                    }
                ],
            },
            "water_velocity": [
                {
                    "velocity_eastward": "m_final_water_vx",
                    "velocity_northward": "m_final_water_vy",
                }
            ],
            "ctd": [
                {
                    "conductivity": "sci_water_cond",
                    "temperature": "sci_water_temp",
                    "pressure": "sci_water_pressure",
                    "time": "sci_ctd41cp_timestamp",
                    "conversion": {"pressure": "bar2dbar"},
                },
                {
                    "conductivity": "m_water_cond",
                    "temperature": "m_water_temp",
                    "pressure": "m_water_pressure",
                    "conversion": {"pressure": "bar2dbar"},
                },
            ],
            "oxygen": [
                {
                    "oxygen_concentration": "sci_oxy3835_oxygen",
                    "oxygen_saturation": "sci_oxy3835_saturation",
                    "temperature": "sci_oxy3835_temp",
                    "time": "sci_oxy3835_timestamp",
                }
            ],
            "optics": [
                {
                    "chlorophyll": "sci_flntu_chlor_units",
                    "turbidity": "sci_flntu_turb_units",
                    "temperature": "sci_flntu_temp",
                    "time": "sci_flntu_timestamp",
                }
            ],
        },
        "extra_sensors": {},
    },
    "seaglider": {
        "categories": {
            "time": [{"time": "elaps_t"}],
            "position": [
                {
                    "longitude": "GPSFIX_fixlon",
                    "latitude": "GPSFIX_fixlat",
                    "conversion": "nmea2deg",
                }
            ],
            "depth": [{"depth": "depth", "conversion": "cm2m"}],
            "attitude": [
                {"roll": "rollAng", "pitch": "pitchAng", "conversion": "deg2rad"}
            ],
            "heading": [{"heading": "head", "conversion": "deg2rad"}],
            "waypoint": [
                {
                    "longitude": "TGT_LATLONG_tgt_lon",
                    "latitude": "TGT_LATLONG_tgt_lat",
                    "conversion": "nmea2deg",
                }
            ],
            "ctd": [
                {
                    "conductivity": "sbect_condFreq",
                    "temperature": "sbect_tempFreq",
                    "pressure": "depth",
                    "conversion": {"pressure": "sgdepth2pres"},
                    "calibration": "sbe_ct",
                }
            ],
            "oxygen": [
                {
                    "oxygen_concentration": "aa1_O2",
                    "oxygen_saturation": "aa1_AirSat",
                    "temperature": "aa1_Temp",
                }
            ],
            "optics": [
                {
                    "chlorophyll": "wl1_Chlsig1",
                    "cdom": "wl1_Cdomsig1",
                    "scatter_650": "wl1_sig1",
                    "calibration": "wleco_bbfl2",
                },
                {
                    "chlorophyll": "wlbbfl2vmt_Chlsig",
                    "cdom": "wlbbfl2vmt_Cdomsig",
                    "scatter_650": "wlbbfl2vmt_wl650sig",
                    "calibration": "wleco_bbfl2",
                },
                {
                    "chlorophyll": "wlbbfl2vmt_Chlsig",
                    "cdom": "wlbbfl2vmt_Cdomsig",
                    "scatter_650": "wlbbfl2vmt_wl600sig",
                    "calibration": "wleco_bbfl2",
                },
            ],
        },
        "extra_sensors": {},
        "profile_max_gap_ratio": 0.6,
    },
    "seaexplorer": {
        "categories": {
            "time": [{"time": "Timestamp"}, {"time": "PLD_REALTIMECLOCK"}],
            "position": [
                {
                    "longitude": "NAV_LONGITUDE",
                    "latitude": "NAV_LATITUDE",
                    "conversion": "nmea2deg",
                },
                {"longitude": "Lon", "latitude": "Lat", "conversion": "nmea2deg"},
            ],
            "depth": [{"depth": "NAV_DEPTH"}, {"depth": "Depth"}],
            "attitude": [{"roll": "Roll", "pitch": "Pitch", "conversion": "deg2rad"}],
            "heading": [{"heading": "Heading", "conversion": "deg2rad"}],
            "ctd": [
                {
                    "conductivity": "GPCTD_CONDUCTIVITY",
                    "temperature": "GPCTD_TEMPERATURE",
                    "pressure": "GPCTD_PRESSURE",
                },
                {
                    "conductivity": "SBD_CONDUCTIVITY",
                    "temperature": "SBD_TEMPERATURE",
                    "pressure": "SBD_PRESSURE",
                },
            ],
            "optics": [
                {
                    "chlorophyll": "FLBBCD_CHL_SCALED",
                    "cdom": "FLBBCD_CDOM_SCALED",
                    "backscatter_700": "FLBBCD_BB_700_SCALED",
                },
                {
                    "chlorophyll": "TRI_CHL_SCALED",
                    "cdom": "TRI_CDOM_SCALED",
                    "backscatter_700": "TRI_BB_700_SCALED",
                },
                {"chlorophyll": "FLNTU_CHL_SCALED", "turbidity": "FLNTU_NTU_SCALED"},
            ],
        },
        "extra_sensors": {
            "methane": [{"methane_concentration": "METS_METHANE_CONC"}],
        },
    },
}

top_level_keys = set(_common_processing_d) | {
    "vehicle",
    "categories",
    "extra_sensors",
    "timeline_boards",
}


def default_options_d(vehicle):
    """Returns a fresh copy of the default options dict for a vehicle"""
    if vehicle not in vehicle_defaults_d:
        raise ConfigurationError(
            f"Unknown vehicle {vehicle} - expected one of {Globals.known_vehicles}"
        )
    options_d = copy.deepcopy(_common_processing_d)
    options_d.update(copy.deepcopy(vehicle_defaults_d[vehicle]))
    options_d["vehicle"] = vehicle
    return options_d


#
# Validation and construction
#


def _optional_float(value, name):
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name}:{value} is not a number") from exc


def _name_list(value, name):
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, (list, tuple)) or not all(
        isinstance(v, str) for v in value
    ):
        raise ConfigurationError(f"{name} must be a name or list of names")
    return tuple(value)


def _build_choice(category, columns, choice_d, extra):
    """Validates a single channel choice"""
    where = f"categories:{category}"
    if not isinstance(choice_d, dict) or not choice_d:
        raise ConfigurationError(f"{where} - choice {choice_d} is not a mapping")

    fields = {}
    for k, v in choice_d.items():
        if k in choice_keys and not (category == "time" and k == "time"):
            continue
        if not extra and k not in columns:
            raise ConfigurationError(
                f"{where} - unknown field {k} (expected one of {list(columns)})"
            )
        if not isinstance(v, str):
            raise ConfigurationError(f"{where}:{k} - channel name {v} is not a string")
        fields[k] = v
    if not fields:
        raise ConfigurationError(f"{where} - choice {choice_d} names no channels")

    # conversion is either a single name applied to every field or a field -> name map
    conversion = choice_d.get("conversion")
    conversions = {}
    if isinstance(conversion, str):
        conversions = {f: conversion for f in fields}
    elif isinstance(conversion, dict):
        for f, c in conversion.items():
            if f not in fields:
                raise ConfigurationError(
                    f"{where} - conversion for {f}, which is not in the choice"
                )
            conversions[f] = c
    elif conversion is not None:
        raise ConfigurationError(f"{where} - invalid conversion {conversion}")
    for f, c in conversions.items():
        if c not in conversion_funcs:
            raise ConfigurationError(
                f"{where}:{f} - unknown conversion {c} (known: {sorted(conversion_funcs)})"
            )

    calibration = choice_d.get("calibration")
    if calibration is not None:
        if calibration not in calibration_funcs:
            raise ConfigurationError(
                f"{where} - unknown calibration {calibration} (known: {sorted(calibration_funcs)})"
            )
        missing = [
            f for f in calibration_funcs[calibration].inputs if f not in fields
        ]
        if missing:
            raise ConfigurationError(
                f"{where} - calibration {calibration} needs fields {missing}"
            )

    status = choice_d.get("status")
    status_good = tuple(choice_d.get("status_good", ()) or ())
    status_bad = tuple(choice_d.get("status_bad", ()) or ())
    if (status_good or status_bad) and not status:
        raise ConfigurationError(f"{where} - status_good/status_bad without status")

    time_channel = choice_d.get("time")
    if category == "time":
        time_channel = None
    elif time_channel is not None and not isinstance(time_channel, str):
        raise ConfigurationError(f"{where} - time channel {time_channel} is not a string")

    return ChannelChoice(
        fields=types.MappingProxyType(fields),
        conversions=types.MappingProxyType(conversions),
        calibration=calibration,
        time=time_channel,
        status=status,
        status_good=status_good,
        status_bad=status_bad,
    )


def _build_category(category, category_d, extra=False):
    """Validates a category entry - a list of choices or a mapping with a choices list"""
    if isinstance(category_d, list):
        category_d = {"choices": category_d}
    if not isinstance(category_d, dict):
        raise ConfigurationError(f"categories:{category} must be a list or mapping")
    for k in category_d:
        if k not in category_keys:
            raise ConfigurationError(f"categories:{category} - unknown key {k}")
    choices_l = category_d.get("choices", [])
    if not isinstance(choices_l, list):
        raise ConfigurationError(f"categories:{category}:choices must be a list")

    columns = category_fields.get(category, {})
    choices = tuple(_build_choice(category, columns, c, extra) for c in choices_l)
    if extra:
        # Extra sensor fields are merged under their own names
        columns = {f: f for c in choices for f in c.fields}

    alignment = category_d.get(
        "alignment", default_alignment.get(category, "linear")
    )
    if alignment not in alignment_methods:
        raise ConfigurationError(
            f"categories:{category} - alignment {alignment} not in {alignment_methods}"
        )
    filling = category_d.get("filling", "none")
    if filling not in Utils.fill_methods:
        raise ConfigurationError(
            f"categories:{category} - filling {filling} not in {Utils.fill_methods}"
        )

    return CategoryOptions(
        name=category,
        columns=types.MappingProxyType(dict(columns)),
        choices=choices,
        alignment=alignment,
        alignment_max_gap=_optional_float(
            category_d.get("alignment_max_gap"), f"{category}:alignment_max_gap"
        ),
        filling=filling,
        filling_max_gap=_optional_float(
            category_d.get("filling_max_gap"), f"{category}:filling_max_gap"
        ),
    )


def _lag_parameters(value, allowed_lengths, name):
    """Validates a lag parameter set - 'auto' or a list of numbers"""
    if value == "auto":
        return value
    if isinstance(value, (int, float)):
        value = [value]
    try:
        params = tuple(float(v) for v in value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{name}:parameters {value} are not numbers") from exc
    if len(params) not in allowed_lengths:
        raise ConfigurationError(
            f"{name}:parameters must have {' or '.join(str(x) for x in allowed_lengths)} entries"
        )
    return params


def _build_entries(entries, name, required, optional, builder):
    """Common checks for the list style options"""
    if not isinstance(entries, list):
        raise ConfigurationError(f"{name} must be a list")
    ret_val = []
    for ii, entry in enumerate(entries):
        where = f"{name}[{ii}]"
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{where} must be a mapping")
        missing = [k for k in required if k not in entry]
        if missing:
            raise ConfigurationError(f"{where} is missing {missing}")
        unknown = [k for k in entry if k not in required and k not in optional]
        if unknown:
            raise ConfigurationError(f"{where} has unknown keys {unknown}")
        ret_val.append(builder(entry, where))
    return tuple(ret_val)


def build_calibration_parameters(params_d, name="calibration_parameters"):
    """Validates raw channel -> calibration coefficients

    Coefficients are a list of numbers in the order of the calibration sheet or a
    mapping of coefficient name to number.
    """
    if params_d is None:
        params_d = {}
    if not isinstance(params_d, dict):
        raise ConfigurationError(f"{name} must be a mapping of channel to coefficients")
    ret_val = {}
    for channel, coefs in params_d.items():
        try:
            if isinstance(coefs, dict):
                ret_val[channel] = types.MappingProxyType(
                    {str(k): float(v) for k, v in coefs.items()}
                )
            else:
                ret_val[channel] = tuple(float(c) for c in np.atleast_1d(coefs))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(
                f"{name}:{channel} - coefficients {coefs} are not numbers"
            ) from exc
    return types.MappingProxyType(ret_val)


calibration_attribute_prefix = "calibration_"


def calibration_parameters_from_globals(globals_d):
    """Calibration coefficients carried as calibration_<channel> global attributes of an L0 file"""
    return build_calibration_parameters(
        {
            k[len(calibration_attribute_prefix) :]: v
            for k, v in globals_d.items()
            if k.startswith(calibration_attribute_prefix)
        },
        "L0 calibration attributes",
    )


def _build_sensor_lag(entry, where):
    estimator = entry.get("estimator", "median")
    if estimator not in estimators:
        raise ConfigurationError(f"{where}:estimator {estimator} not in {list(estimators)}")
    kwargs = {
        k: _name_list(entry[k], f"{where}:{k}")
        for k in ("time", "depth", "pitch")
        if k in entry
    }
    if "default_parameters" in entry:
        kwargs["default_parameters"] = _lag_parameters(
            entry["default_parameters"], (1, 2), where
        )
    return SensorLagOptions(
        corrected=entry["corrected"],
        original=entry["original"],
        parameters=_lag_parameters(entry["parameters"], (1, 2), where),
        estimator=estimator,
        **kwargs,
    )


def _build_thermal_lag(entry, where):
    estimator = entry.get("estimator", "median")
    if estimator not in estimators:
        raise ConfigurationError(f"{where}:estimator {estimator} not in {list(estimators)}")
    search = entry.get("search", "nelder-mead")
    if search not in search_strategies:
        raise ConfigurationError(f"{where}:search {search} not in {search_strategies}")
    parameters = _lag_parameters(entry["parameters"], (2, 4), where)
    constant_flow = bool(entry.get("constant_flow", True))
    if parameters != "auto":
        constant_flow = len(parameters) == 2
    default_parameters = entry.get("default_parameters")
    if default_parameters is None:
        default_parameters = (
            thermal_lag_constant_first_guess
            if constant_flow
            else thermal_lag_first_guess
        )
    default_parameters = _lag_parameters(
        default_parameters, (2,) if constant_flow else (4,), where
    )
    kwargs = {
        k: _name_list(entry[k], f"{where}:{k}")
        for k in ("time", "depth", "pitch")
        if k in entry
    }
    return ThermalLagOptions(
        conductivity_corrected=entry["conductivity_corrected"],
        temperature_corrected=entry["temperature_corrected"],
        conductivity_original=entry["conductivity_original"],
        temperature_original=entry["temperature_original"],
        pressure_original=entry["pressure_original"],
        parameters=parameters,
        constant_flow=constant_flow,
        estimator=estimator,
        search=search,
        default_parameters=default_parameters,
        **kwargs,
    )


def _derived_builder(output_key, input_keys):
    def builder(entry, where):
        for k in (output_key,) + input_keys:
            if not isinstance(entry[k], str):
                raise ConfigurationError(f"{where}:{k} must be a variable name")
        return DerivedOptions(
            output=entry[output_key],
            inputs=types.MappingProxyType({k: entry[k] for k in input_keys}),
        )

    return builder


def _build_gridding(gridding_d):
    if not isinstance(gridding_d, dict):
        raise ConfigurationError("gridding must be a mapping")
    known = {f.name for f in dataclasses.fields(GriddingOptions)}
    unknown = [k for k in gridding_d if k not in known]
    if unknown:
        raise ConfigurationError(f"gridding has unknown keys {unknown}")
    kwargs = {}
    for k in ("profile_list", "time_list", "depth_list", "variable_list"):
        if k in gridding_d:
            kwargs[k] = _name_list(gridding_d[k], f"gridding:{k}")
    if "position_list" in gridding_d:
        position_list = []
        for p in gridding_d["position_list"]:
            if not isinstance(p, dict) or set(p) != {"latitude", "longitude"}:
                raise ConfigurationError(
                    "gridding:position_list entries need latitude and longitude"
                )
            position_list.append(types.MappingProxyType(dict(p)))
        kwargs["position_list"] = tuple(position_list)
    if "depth_step" in gridding_d:
        depth_step = _optional_float(gridding_d["depth_step"], "gridding:depth_step")
        if depth_step is None or depth_step <= 0.0:
            raise ConfigurationError("gridding:depth_step must be positive")
        kwargs["depth_step"] = depth_step
    if "reducer" in gridding_d:
        if gridding_d["reducer"] not in reducers:
            raise ConfigurationError(f"gridding:reducer must be one of {reducers}")
        kwargs["reducer"] = gridding_d["reducer"]
    return GriddingOptions(**kwargs)


def build_processing_options(options_d):
    """Validates a complete options dict and returns the frozen ProcessingOptions

    Raises:
        ConfigurationError for anything that does not fit the schema
    """
    if not isinstance(options_d, dict):
        raise ConfigurationError("Processing options must be a mapping")
    unknown = [k for k in options_d if k not in top_level_keys]
    if unknown:
        raise ConfigurationError(f"Unknown processing options {unknown}")

    categories_d = options_d.get("categories", {})
    if not isinstance(categories_d, dict):
        raise ConfigurationError("categories must be a mapping")
    if "time" not in categories_d:
        raise ConfigurationError("categories must include time")
    categories = {}
    for category, category_d in categories_d.items():
        if category not in category_fields:
            raise ConfigurationError(
                f"Unknown category {category} (expected one of {list(category_fields)})"
            )
        categories[category] = _build_category(category, category_d)
    for sensor, sensor_d in (options_d.get("extra_sensors") or {}).items():
        if sensor in categories:
            raise ConfigurationError(f"Extra sensor {sensor} shadows a category")
        categories[sensor] = _build_category(sensor, sensor_d, extra=True)

    timeline_mode = options_d.get("timeline_mode", "first")
    if timeline_mode not in ("first", "union"):
        raise ConfigurationError(f"timeline_mode {timeline_mode} not in (first, union)")

    profiling_list = []
    for p in options_d.get("profiling_list", []):
        if not isinstance(p, dict) or set(p) != {"depth", "time"}:
            raise ConfigurationError(
                f"profiling_list entry {p} must name exactly a depth and a time"
            )
        profiling_list.append(types.MappingProxyType(dict(p)))

    profile_max_gap_ratio = float(options_d.get("profile_max_gap_ratio", 0.8))
    if not 0.0 <= profile_max_gap_ratio <= 1.0:
        raise ConfigurationError("profile_max_gap_ratio must be between 0 and 1")

    ret_val = ProcessingOptions(
        vehicle=options_d.get("vehicle", ""),
        categories=types.MappingProxyType(categories),
        timeline_mode=timeline_mode,
        timeline_boards=_name_list(
            options_d.get("timeline_boards", []), "timeline_boards"
        ),
        time_filling=bool(options_d.get("time_filling", True)),
        time_filling_max_gap=_optional_float(
            options_d.get("time_filling_max_gap"), "time_filling_max_gap"
        ),
        pressure_filtering=bool(options_d.get("pressure_filtering", True)),
        pressure_filter_constant=float(options_d.get("pressure_filter_constant", 4.0)),
        depth_ctd_derivation=bool(options_d.get("depth_ctd_derivation", True)),
        profiling_list=tuple(profiling_list),
        profile_min_range=float(options_d.get("profile_min_range", 10.0)),
        profile_max_gap_ratio=profile_max_gap_ratio,
        profile_min_duration=float(options_d.get("profile_min_duration", 0.0)),
        transect_max_gap=_optional_float(
            options_d.get("transect_max_gap"), "transect_max_gap"
        ),
        sensor_lag_list=_build_entries(
            options_d.get("sensor_lag_list", []),
            "sensor_lag_list",
            ("corrected", "original", "parameters"),
            ("time", "depth", "pitch", "estimator", "default_parameters"),
            _build_sensor_lag,
        ),
        thermal_lag_list=_build_entries(
            options_d.get("thermal_lag_list", []),
            "thermal_lag_list",
            (
                "conductivity_corrected",
                "temperature_corrected",
                "conductivity_original",
                "temperature_original",
                "pressure_original",
                "parameters",
            ),
            (
                "time",
                "depth",
                "pitch",
                "constant_flow",
                "estimator",
                "search",
                "default_parameters",
            ),
            _build_thermal_lag,
        ),
        salinity_list=_build_entries(
            options_d.get("salinity_list", []),
            "salinity_list",
            ("salinity", "conductivity", "temperature", "pressure"),
            (),
            _derived_builder("salinity", ("conductivity", "temperature", "pressure")),
        ),
        density_list=_build_entries(
            options_d.get("density_list", []),
            "density_list",
            ("density", "salinity", "temperature", "pressure"),
            (),
            _derived_builder("density", ("salinity", "temperature", "pressure")),
        ),
        sound_velocity_list=_build_entries(
            options_d.get("sound_velocity_list", []),
            "sound_velocity_list",
            ("sound_velocity", "salinity", "temperature", "pressure"),
            (),
            _derived_builder(
                "sound_velocity", ("salinity", "temperature", "pressure")
            ),
        ),
        gridding=_build_gridding(options_d.get("gridding", {})),
        calibration_parameters=build_calibration_parameters(
            options_d.get("calibration_parameters", {})
        ),
    )
    log_debug(
        f"Processing options for {ret_val.vehicle}: categories {list(categories)}"
    )
    return ret_val


def load_processing_options(user_d=None, vehicle=None):
    """Builds ProcessingOptions from the vehicle defaults overlaid with a user dict

    Input:
        user_d - options dict (for example, loaded from yaml).  Top level entries
                 replace the defaults; entries under categories and extra_sensors
                 replace only the named category.
        vehicle - vehicle type; defaults to user_d["vehicle"], then slocum

    Returns:
        ProcessingOptions
    """
    user_d = copy.deepcopy(user_d) if user_d else {}
    if not isinstance(user_d, dict):
        raise ConfigurationError("Processing options must be a mapping")
    if vehicle is None:
        vehicle = user_d.get("vehicle", "slocum")
    options_d = default_options_d(vehicle)
    for k, v in user_d.items():
        if k in ("categories", "extra_sensors") and isinstance(v, dict):
            options_d.setdefault(k, {}).update(v)
        elif k == "gridding" and isinstance(v, dict):
            options_d["gridding"].update(v)
        else:
            options_d[k] = v
    options_d["vehicle"] = vehicle
    return build_processing_options(options_d)


def processing_options_from_yaml(yaml_file, vehicle=None):
    """Loads processing options from a yaml file"""
    try:
        user_d = Utils.load_yaml(yaml_file)
    except Exception as exc:
        raise ConfigurationError(f"Could not load {yaml_file}") from exc
    log_info(f"Loaded processing options from {yaml_file}")
    return load_processing_options(user_d, vehicle)
