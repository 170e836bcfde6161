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

"""Routines and variables for reading L0 and creating L1/L2 NetCDF files"""

import pathlib
import time
import uuid

import netCDF4
import numpy as np
import xarray as xr

import Globals
import QC
from BaseLog import log_debug, log_info, log_warning
from SensorMerge import SensorSeries

nc_nan = np.array([np.nan], dtype=np.float64)[0]  # CF1.4 ensure double

# NetCDF Climate and Forecast (CF) Metadata Conventions
nc_variables_convention_version = "CF-1.6"
nc_metadata_convention_version = "Unidata Dataset Discovery v1.0"

nc_time_units = "seconds since 1970-01-01T00:00:00Z"

nc_dim_time = "time"
nc_dim_profile = "profile"
nc_dim_depth = "depth"


def nc_ISO8601_date(epoch_time):
    """return an epoch_time ala time.time() in required metadata standard format"""
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(epoch_time))


# Variable name -> CF attributes
nc_var_metadata = {
    "time": {"long_name": "time", "standard_name": "time", "units": nc_time_units},
    "latitude": {
        "long_name": "latitude",
        "standard_name": "latitude",
        "units": "degree_north",
    },
    "longitude": {
        "long_name": "longitude",
        "standard_name": "longitude",
        "units": "degree_east",
    },
    "depth": {"long_name": "glider measured depth", "standard_name": "depth", "units": "m"},
    "depth_ctd": {
        "long_name": "depth derived from the CTD pressure",
        "standard_name": "depth",
        "units": "m",
    },
    "roll": {"long_name": "glider roll", "standard_name": "platform_roll_angle", "units": "rad"},
    "pitch": {
        "long_name": "glider pitch",
        "standard_name": "platform_pitch_angle",
        "units": "rad",
    },
    "heading": {
        "long_name": "glider heading",
        "standard_name": "platform_orientation",
        "units": "rad",
    },
    "waypoint_latitude": {"long_name": "waypoint latitude", "units": "degree_north"},
    "waypoint_longitude": {"long_name": "waypoint longitude", "units": "degree_east"},
    "water_velocity_eastward": {
        "long_name": "mean eastward water velocity in segment",
        "standard_name": "eastward_water_velocity",
        "units": "m s-1",
    },
    "water_velocity_northward": {
        "long_name": "mean northward water velocity in segment",
        "standard_name": "northward_water_velocity",
        "units": "m s-1",
    },
    "conductivity": {
        "long_name": "water conductivity",
        "standard_name": "sea_water_electrical_conductivity",
        "units": "S m-1",
    },
    "temperature": {
        "long_name": "water temperature",
        "standard_name": "sea_water_temperature",
        "units": "Celsius",
    },
    "pressure": {
        "long_name": "water pressure",
        "standard_name": "sea_water_pressure",
        "units": "decibar",
    },
    "pressure_filtered": {
        "long_name": "low pass filtered water pressure",
        "standard_name": "sea_water_pressure",
        "units": "decibar",
    },
    "conductivity_corrected_thermal": {
        "long_name": "water conductivity with thermal lag correction",
        "standard_name": "sea_water_electrical_conductivity",
        "units": "S m-1",
    },
    "temperature_corrected_thermal": {
        "long_name": "water temperature with thermal lag correction",
        "standard_name": "sea_water_temperature",
        "units": "Celsius",
    },
    "salinity": {
        "long_name": "water salinity",
        "standard_name": "sea_water_salinity",
        "units": "PSU",
    },
    "salinity_corrected_thermal": {
        "long_name": "water salinity from thermal lag corrected temperature",
        "standard_name": "sea_water_salinity",
        "units": "PSU",
    },
    "density": {
        "long_name": "water density",
        "standard_name": "sea_water_density",
        "units": "kg m-3",
    },
    "density_corrected_thermal": {
        "long_name": "water density from thermal lag corrected salinity",
        "standard_name": "sea_water_density",
        "units": "kg m-3",
    },
    "sound_velocity": {
        "long_name": "sound velocity",
        "standard_name": "speed_of_sound_in_sea_water",
        "units": "m s-1",
    },
    "oxygen_concentration": {
        "long_name": "oxygen concentration",
        "standard_name": "mole_concentration_of_dissolved_molecular_oxygen_in_sea_water",
        "units": "umol l-1",
    },
    "oxygen_saturation": {
        "long_name": "oxygen saturation",
        "standard_name": "fractional_saturation_of_oxygen_in_sea_water",
        "units": "percent",
    },
    "temperature_oxygen": {"long_name": "oxygen sensor temperature", "units": "Celsius"},
    "chlorophyll": {
        "long_name": "chlorophyll",
        "standard_name": "concentration_of_chlorophyll_in_sea_water",
        "units": "mg m-3",
    },
    "turbidity": {
        "long_name": "turbidity",
        "standard_name": "sea_water_turbidity",
        "units": "NTU",
    },
    "cdom": {"long_name": "CDOM", "units": "ppb"},
    "scatter_650": {"long_name": "650 nm wavelength scattering", "units": "1"},
    "backscatter_700": {"long_name": "700 nm wavelength backscatter", "units": "1"},
    "temperature_optics": {"long_name": "optic sensor temperature", "units": "Celsius"},
    "profile_index": {"long_name": "profile index", "units": "1"},
    "profile_direction": {
        "long_name": "glider vertical speed direction",
        "units": "1",
        "comment": "-1 = ascending, 0 = inflecting or stalled, 1 = descending",
    },
    "transect_index": {"long_name": "transect index", "units": "1"},
    "distance_over_ground": {"long_name": "distance over ground flown since mission start", "units": "km"},
}


def _attr_value(value):
    """Converts a metadata value to something netCDF attributes can hold"""
    if isinstance(value, (bool, np.bool_)):
        return int(value)
    if isinstance(value, (str, int, float, np.number)):
        return value
    if isinstance(value, np.ndarray) and value.dtype.kind in "biuf":
        return value.astype(np.float64)
    if isinstance(value, (tuple, list)):
        if value and all(
            isinstance(v, (int, float, np.number)) and not isinstance(v, bool)
            for v in value
        ):
            return np.array(value, dtype=np.float64)
        return " ".join(str(v) for v in value)
    return str(value)


def var_attrs(name, source_attrs=None):
    """CF attributes of a variable, with its processing metadata added"""
    attrs = dict(nc_var_metadata.get(name, {"long_name": name}))
    for k, v in (source_attrs or {}).items():
        if v is None or (isinstance(v, str) and not v):
            continue
        attrs[k] = _attr_value(v)
    return attrs


def qc_attrs(name):
    return {
        "long_name": f"{name} quality flag",
        "standard_name": "status_flag",
        "flag_values": QC.QC_flag_values,
        "flag_meanings": QC.QC_flag_meanings,
        "quality_control_version": Globals.quality_control_version,
    }


def _globals(deployment, level, file_version, extra=None):
    now = time.time()
    globals_d = {
        "Conventions": nc_variables_convention_version,
        "Metadata_Conventions": nc_metadata_convention_version,
        "deployment_name": deployment,
        "processing_level": level,
        "file_version": file_version,
        "glider_proc_version": Globals.glider_proc_version,
        "date_created": nc_ISO8601_date(now),
        "uuid": str(uuid.uuid1()),
    }
    for k, v in (extra or {}).items():
        globals_d[k] = _attr_value(v)
    return globals_d


def make_l1_dataset(record, globals_d=None):
    """The processed time series of a deployment as an xarray Dataset

    Every column of the record becomes a variable along time; each variable with
    qc flags gets a <var>_qc companion.
    """
    dso = xr.Dataset()
    for name in record.names():
        dso[name] = xr.DataArray(
            record[name],
            dims=(nc_dim_time,),
            attrs=var_attrs(name, record.attrs.get(name)),
        )
        if name in record.qc:
            dso[f"{name}_qc"] = xr.DataArray(
                np.asarray(record.qc[name], dtype=QC.qc_dtype),
                dims=(nc_dim_time,),
                attrs=qc_attrs(name),
            )
            dso[name].attrs["ancillary_variables"] = f"{name}_qc"
    time_v = record.time
    dso.attrs = _globals(
        record.deployment,
        "L1 processed time series",
        Globals.l1_timeseries_nc_fileversion,
        globals_d,
    )
    if time_v.size:
        dso.attrs["time_coverage_start"] = nc_ISO8601_date(time_v[0])
        dso.attrs["time_coverage_end"] = nc_ISO8601_date(time_v[-1])
    log_debug(f"L1 dataset with {len(dso.data_vars)} variables")
    return dso


def make_l2_dataset(gridded, deployment="", globals_d=None):
    """The gridded product of a deployment as an xarray Dataset"""
    dso = xr.Dataset(
        coords={
            nc_dim_profile: (
                (nc_dim_profile,),
                gridded.profile_index,
                var_attrs("profile_index"),
            ),
            nc_dim_depth: ((nc_dim_depth,), gridded.depth, var_attrs("depth")),
        }
    )
    dso["depth_bounds"] = xr.DataArray(
        np.column_stack((gridded.depth_edges[:-1], gridded.depth_edges[1:])),
        dims=(nc_dim_depth, "bounds"),
        attrs={"long_name": "depth bin edges", "units": "m"},
    )
    dso[nc_dim_depth].attrs["bounds"] = "depth_bounds"
    for name, values in (
        ("time", gridded.time),
        ("latitude", gridded.latitude),
        ("longitude", gridded.longitude),
    ):
        dso[name] = xr.DataArray(values, dims=(nc_dim_profile,), attrs=var_attrs(name))
    for name, field in gridded.fields.items():
        dso[name] = xr.DataArray(
            field.data,
            dims=(nc_dim_profile, nc_dim_depth),
            attrs=var_attrs(name, field.attrs),
        )
    dso.attrs = _globals(
        deployment,
        "L2 depth gridded profiles",
        Globals.l2_gridded_nc_fileversion,
        {**gridded.attrs, **(globals_d or {})},
    )
    return dso


def write_nc_file(dso, nc_file_name):
    """Writes a dataset, with missing values stored as the fill value"""
    encoding = {}
    for name, var in dso.variables.items():
        if np.issubdtype(var.dtype, np.floating):
            encoding[name] = {"_FillValue": Globals.fill_value}
    dso.to_netcdf(nc_file_name, encoding=encoding)
    log_info(f"Wrote {nc_file_name}")


def read_l0_file(nc_file_name):
    """Reads the raw sensor series of a deployment from an L0 netCDF file

    Each 1-d variable is one series; its time is the coordinate variable of its
    dimension.  The source board is taken from a variable's board attribute.

    Returns:
        (deployment name, list of SensorSeries, dict of the global attributes)
    """
    nc_file_name = pathlib.Path(nc_file_name)
    series = []
    with netCDF4.Dataset(nc_file_name, "r") as dsi:
        globals_d = {k: dsi.getncattr(k) for k in dsi.ncattrs()}
        deployment = str(globals_d.get("deployment_name", nc_file_name.stem))
        for name, var in dsi.variables.items():
            if var.ndim != 1:
                log_debug(f"Skipping {name} - not a 1-d variable")
                continue
            dim = var.dimensions[0]
            if dim not in dsi.variables:
                log_warning(f"{name} has no time coordinate ({dim}) - skipped")
                continue
            if not np.issubdtype(var.dtype, np.number):
                log_debug(f"Skipping {name} - not numeric")
                continue
            try:
                series.append(
                    SensorSeries(
                        name=name,
                        time=np.ma.filled(
                            dsi.variables[dim][:].astype(np.float64), np.nan
                        ),
                        values=np.ma.filled(var[:].astype(np.float64), np.nan),
                        board=var.getncattr("board") if "board" in var.ncattrs() else "",
                    )
                )
            except ValueError as exc:
                log_warning(f"Skipping {name} - {exc}")
    log_info(f"Read {len(series)} series for {deployment} from {nc_file_name}")
    return deployment, series, globals_d
