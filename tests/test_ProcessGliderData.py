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
import seawater
import testutils

import ProcessGliderData
import ProcessingOptions
import SensorMerge

_thermal_lag_entry = {
    "conductivity_corrected": "conductivity_corrected_thermal",
    "temperature_corrected": "temperature_corrected_thermal",
    "conductivity_original": "conductivity",
    "temperature_original": "temperature",
    "pressure_original": "pressure",
}


def _options(**overrides):
    return ProcessingOptions.load_processing_options(overrides, vehicle="slocum")


def _sawtooth_record(n_legs=4):
    return SensorMerge.merge_sensor_series(
        testutils.series_list(testutils.slocum_series_d(n_legs)),
        _options(),
        "unit_001",
    )


def test_ten_samples_salinity(caplog):
    time_v = testutils.start_time + np.arange(10.0)
    pressure = np.linspace(1.0, 10.0, 10)
    temperature = np.linspace(15.0, 14.0, 10)
    conductivity = testutils.conductivity_from(34.0, temperature, pressure)
    record = testutils.make_record(
        time_v,
        conductivity=conductivity,
        temperature=temperature,
        pressure=pressure,
        latitude=np.full(10, 47.5),
        longitude=np.full(10, -122.25),
    )
    options = _options(
        thermal_lag_list=[],
        salinity_list=[
            {
                "salinity": "salinity",
                "conductivity": "conductivity",
                "temperature": "temperature",
                "pressure": "pressure",
            }
        ],
        density_list=[
            {
                "density": "density",
                "salinity": "salinity",
                "temperature": "temperature",
                "pressure": "pressure",
            }
        ],
    )
    ProcessGliderData.process_glider_data(record, options)
    expected = seawater.salt(
        conductivity / (seawater.constants.c3515 / 10.0), temperature, pressure
    )
    np.testing.assert_allclose(record["salinity"], expected, rtol=1e-6)
    np.testing.assert_allclose(
        record["density"], seawater.dens(expected, temperature, pressure), rtol=1e-6
    )
    assert np.all(np.isfinite(record["sound_velocity"]))
    assert np.all(np.isfinite(record["pressure_filtered"]))
    assert np.all(record["depth_ctd"] > 0.0)
    # Too shallow for a profile
    assert record.profiles == []
    np.testing.assert_array_equal(record["profile_index"], np.full(10, 0.5))
    testutils.check_log(caplog, [])


def test_merged_ctd_salinity(caplog):
    """Three raw CTD series at 1 Hz, merged then taken through salinity"""
    time_v = testutils.start_time + np.arange(10.0)
    pressure = np.linspace(1.0, 10.0, 10)
    temperature = np.linspace(15.0, 14.0, 10)
    conductivity = testutils.conductivity_from(34.0, temperature, pressure)
    series = [
        SensorMerge.SensorSeries("ctd_cond", time_v, conductivity, "ctd"),
        SensorMerge.SensorSeries("ctd_temp", time_v, temperature, "ctd"),
        SensorMerge.SensorSeries("ctd_pres", time_v, pressure, "ctd"),
    ]
    options = _options(
        timeline_mode="union",
        categories={
            "ctd": [
                {
                    "conductivity": "ctd_cond",
                    "temperature": "ctd_temp",
                    "pressure": "ctd_pres",
                }
            ]
        },
        thermal_lag_list=[],
    )
    record = SensorMerge.merge_sensor_series(series, options, "unit_010")
    np.testing.assert_array_equal(record.time, time_v)
    ProcessGliderData.process_glider_data(record, options)

    expected = seawater.salt(
        conductivity / (seawater.constants.c3515 / 10.0), temperature, pressure
    )
    np.testing.assert_allclose(record["salinity"], expected, rtol=1e-6)
    np.testing.assert_allclose(
        record["density"], seawater.dens(expected, temperature, pressure), rtol=1e-6
    )
    # No navigation sensors, so no position, depth_ctd or profiles
    testutils.check_log(
        caplog, ["sensor found", "No latitude", "no profiles", "_corrected_thermal"]
    )


def test_missing_inputs_skip_steps(caplog):
    time_v = testutils.start_time + np.arange(10.0)
    record = testutils.make_record(time_v, temperature=np.full(10, 10.0))
    ProcessGliderData.process_glider_data(record, _options())
    for name in ("salinity", "density", "conductivity_corrected_thermal", "depth_ctd"):
        assert name not in record
    assert "No depth/time pair" in caplog.text
    assert "skipping thermal lag correction" in caplog.text
    assert "skipping salinity salinity" in caplog.text


def test_segmentation_columns():
    record = _sawtooth_record(n_legs=3)
    ProcessGliderData.process_glider_data(
        record, _options(thermal_lag_list=[{**_thermal_lag_entry, "parameters": [0.03, 8.0]}])
    )
    assert len(record.profiles) == 3
    assert set(np.unique(record["profile_direction"])) == {-1.0, 0.0, 1.0}
    np.testing.assert_array_equal(record["transect_index"], np.ones(len(record)))
    assert record["distance_over_ground"][-1] == pytest.approx(0.0)
    assert record.attrs["profile_index"]["depth"] == "depth_ctd"


def test_configured_thermal_lag():
    record = _sawtooth_record()
    params = [0.03, 8.0]
    ProcessGliderData.process_glider_data(
        record, _options(thermal_lag_list=[{**_thermal_lag_entry, "parameters": params}])
    )
    attrs = record.attrs["conductivity_corrected_thermal"]
    assert attrs["thermal_lag_fit"] == "configured"
    assert attrs["thermal_lag_parameters"] == tuple(params)
    cond = record["conductivity_corrected_thermal"]
    in_profile = record["profile_index"] == np.floor(record["profile_index"])
    assert np.all(np.isnan(cond[~in_profile]))
    assert np.all(np.isfinite(cond[in_profile]))
    # The synthetic water column has no lag, so the correction moves salinity off 35
    assert np.nanmax(np.abs(record["salinity_corrected_thermal"] - 35.0)) > 1e-4
    np.testing.assert_allclose(record["salinity"], 35.0, atol=1e-4)


def test_auto_thermal_lag_fallback(caplog):
    record = _sawtooth_record(n_legs=1)
    ProcessGliderData.process_glider_data(record, _options())
    attrs = record.attrs["temperature_corrected_thermal"]
    assert attrs["thermal_lag_fit"] == "fallback"
    assert attrs["thermal_lag_parameters"] == pytest.approx(
        ProcessingOptions.thermal_lag_constant_first_guess
    )
    assert "No thermal lag estimate" in caplog.text


def test_sensor_lag():
    record = _sawtooth_record(n_legs=2)
    ProcessGliderData.process_glider_data(
        record,
        _options(
            thermal_lag_list=[],
            sensor_lag_list=[
                {
                    "corrected": "temperature_response",
                    "original": "temperature",
                    "parameters": [0.0],
                },
                {
                    "corrected": "temperature_response_auto",
                    "original": "temperature",
                    "parameters": "auto",
                },
            ],
        ),
    )
    in_profile = record["profile_index"] == np.floor(record["profile_index"])
    np.testing.assert_allclose(
        record["temperature_response"][in_profile], record["temperature"][in_profile]
    )
    attrs = record.attrs["temperature_response_auto"]
    assert attrs["sensor_lag_fit"] == "auto"
    # No lag in the synthetic sensor
    assert attrs["sensor_lag_parameters"][0] == pytest.approx(0.0, abs=0.05)
