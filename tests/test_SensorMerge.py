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

import ProcessingOptions
import SensorMerge
import Utils
from SensorMerge import SensorSeries


@pytest.fixture(name="slocum_options")
def fixture_slocum_options():
    return ProcessingOptions.load_processing_options(vehicle="slocum")


@pytest.mark.parametrize(
    "method,max_gap,expected",
    (
        ("exact", None, [np.nan, 1.0, np.nan, np.nan, 3.0, np.nan]),
        ("previous", None, [np.nan, 1.0, 1.0, 1.0, 3.0, 3.0]),
        ("previous", 1.0, [np.nan, 1.0, 1.0, np.nan, 3.0, 3.0]),
        ("nearest", None, [1.0, 1.0, 1.0, 3.0, 3.0, 3.0]),
        ("linear", None, [np.nan, 1.0, 5.0 / 3.0, 7.0 / 3.0, 3.0, np.nan]),
        ("linear", 2.0, [np.nan, 1.0, np.nan, np.nan, 3.0, np.nan]),
    ),
)
def test_align_series(method, max_gap, expected):
    timeline = np.array([0.0, 1.0, 2.0, 3.0, 4.0, 5.0])
    aligned = SensorMerge.align_series(
        np.array([1.0, 4.0]), np.array([1.0, 3.0]), timeline, method, max_gap
    )
    np.testing.assert_allclose(aligned, expected)


def test_align_series_repeated_timestamps():
    aligned = SensorMerge.align_series(
        np.array([1.0, 1.0, 2.0]), np.array([5.0, 6.0, 7.0]), np.array([1.0]), "exact"
    )
    np.testing.assert_array_equal(aligned, [6.0])


def test_sensor_series_validation(caplog):
    s = SensorSeries("x", [1.0, 2.0, 3.0], ["1", "junk", 3])
    np.testing.assert_array_equal(s.values, [1.0, np.nan, 3.0])
    assert "non-numeric" in caplog.text
    with pytest.raises(ValueError):
        SensorSeries("x", [1.0, 2.0], [1.0])
    with pytest.raises(ValueError):
        SensorSeries("x", [2.0, 1.0], [1.0, 1.0])


def test_merged_record():
    record = testutils.make_record(np.array([1.0, 2.0, 3.0]), depth=[1.0, np.nan, 3.0])
    assert len(record) == 3
    assert record.names() == ["time", "depth"]
    assert record.has_data("depth")
    assert record.first_available(("depth_ctd", "depth")) == "depth"
    with pytest.raises(ValueError):
        record["temperature"] = [1.0, 2.0]
    with pytest.raises(KeyError):
        record["time"] = [1.0, 2.0, 3.0]
    with pytest.raises(ValueError):
        SensorMerge.MergedRecord(np.array([1.0, 1.0]))
    df = record.to_dataframe()
    assert list(df.columns) == ["depth"]
    assert df.index.name == "time"


def test_merge_slocum(caplog, slocum_options):
    series_d = testutils.slocum_series_d(n_legs=2)
    record = SensorMerge.merge_sensor_series(
        testutils.series_list(series_d), slocum_options, "unit_001"
    )
    time_v = series_d["glider"]["m_present_time"]
    np.testing.assert_array_equal(record.time, time_v)
    np.testing.assert_allclose(record["latitude"], 47.5)
    np.testing.assert_allclose(record["longitude"], -122.25)
    # bar -> dbar
    np.testing.assert_allclose(record["pressure"], series_d["glider"]["m_depth"])
    np.testing.assert_array_equal(record["time_ctd"], time_v)
    assert record.attrs["pressure"]["conversion"] == "bar2dbar"
    assert record.attrs["latitude"]["source"] == "m_gps_lat"
    for name in ("oxygen_concentration", "chlorophyll", "water_velocity_eastward"):
        assert name not in record
    testutils.check_log(
        caplog,
        [
            "No oxygen sensor found",
            "No optics sensor found",
            "No water_velocity sensor found",
        ],
    )


def test_merge_falls_back_to_second_choice(slocum_options):
    series_d = testutils.slocum_series_d(n_legs=2)
    science = series_d.pop("science")
    series_d["glider"].update(
        {
            "m_water_cond": science["sci_water_cond"],
            "m_water_temp": science["sci_water_temp"],
            "m_water_pressure": science["sci_water_pressure"],
        }
    )
    record = SensorMerge.merge_sensor_series(
        testutils.series_list(series_d), slocum_options
    )
    assert record.attrs["conductivity"]["source"] == "m_water_cond"
    assert "time_ctd" not in record


def test_merge_status_gating_and_zero_fixes(slocum_options):
    series_d = testutils.slocum_series_d(n_legs=2)
    glider = series_d["glider"]
    glider["m_gps_status"][5] = 1.0
    glider["m_gps_lat"][10] = 0.0
    glider["m_gps_lon"][10] = 0.0
    record = SensorMerge.merge_sensor_series(
        testutils.series_list(series_d), slocum_options
    )
    # Gated and (0, 0) fixes are dropped, then filled linearly from their neighbors
    np.testing.assert_allclose(record["latitude"][[5, 10]], 47.5)


def test_merge_position_without_filling():
    options = ProcessingOptions.load_processing_options(
        {
            "categories": {
                "position": {
                    "filling": "none",
                    "alignment": "exact",
                    "choices": [
                        {
                            "longitude": "m_gps_lon",
                            "latitude": "m_gps_lat",
                            "conversion": "nmea2deg",
                            "status": "m_gps_status",
                            "status_good": [0],
                        }
                    ],
                }
            }
        },
        vehicle="slocum",
    )
    series_d = testutils.slocum_series_d(n_legs=2)
    series_d["glider"]["m_gps_status"][5] = 1.0
    series_d["glider"]["m_gps_lat"][10] = 0.0
    series_d["glider"]["m_gps_lon"][10] = 0.0
    record = SensorMerge.merge_sensor_series(testutils.series_list(series_d), options)
    assert np.isnan(record["latitude"][5])
    assert np.isnan(record["latitude"][10])
    assert np.isnan(record["longitude"][10])
    assert record["latitude"][6] == pytest.approx(47.5)


def test_conversion_failure_marks_missing(caplog, slocum_options):
    series_d = testutils.slocum_series_d(n_legs=2)
    series_d["glider"]["m_gps_lat"][3] = 4799.0  # 99 minutes
    record = SensorMerge.merge_sensor_series(
        testutils.series_list(series_d), slocum_options, "unit_001"
    )
    assert "could not be converted by nmea2deg" in caplog.text
    # Filled from the neighbors
    assert record["latitude"][3] == pytest.approx(47.5)


def test_no_timeline(slocum_options):
    series_d = testutils.slocum_series_d(n_legs=2)
    series_d["glider"]["m_present_time"] = np.full(
        series_d["glider"]["m_depth"].size, np.nan
    )
    series = [
        s for s in testutils.series_list(series_d) if s.name != "m_present_time"
    ]
    with pytest.raises(SensorMerge.TimelineError):
        SensorMerge.merge_sensor_series(series, slocum_options)


def test_union_timeline():
    options = ProcessingOptions.load_processing_options(
        {"timeline_mode": "union", "timeline_boards": ["science"]}, vehicle="slocum"
    )
    series_d = testutils.slocum_series_d(n_legs=2)
    science = series_d["science"]
    # Science samples half way between the glider samples
    science["sci_ctd41cp_timestamp"] = science["sci_ctd41cp_timestamp"] + 1.0
    record = SensorMerge.merge_sensor_series(testutils.series_list(series_d), options)
    assert len(record) == 2 * series_d["glider"]["m_present_time"].size


sbect_temp_coefs = [4.38052489e-3, 6.25478746e-4, 2.34258763e-5, 2.50671271e-6]
sbect_cond_coefs = [-9.92304872, 1.11163373, -2.02979731e-3, 2.29265437e-4, 3.25e-6, -9.57e-8]


def _seaglider_channels(n=7):
    return {
        "elaps_t": testutils.start_time + 5.0 * np.arange(float(n)),
        "depth": np.linspace(0.0, 6000.0, n),  # cm
        "sbect_tempFreq": np.linspace(3400.0, 6500.0, n),
        "sbect_condFreq": np.linspace(6000.0, 7900.0, n),
        "wl1_Chlsig1": np.linspace(50.0, 80.0, n),
        "wl1_Cdomsig1": np.linspace(45.0, 60.0, n),
        "wl1_sig1": np.linspace(70.0, 85.0, n),
    }


def _seaglider_series(channels_d):
    return [
        SensorSeries(name, channels_d["elaps_t"], values, "truck")
        for name, values in channels_d.items()
    ]


_seaglider_calibration = {
    "sbect_tempFreq": sbect_temp_coefs,
    "sbect_condFreq": sbect_cond_coefs,
    "wl1_Chlsig1": [0.0118, 38.0],
    "wl1_Cdomsig1": {"sf": 0.0878, "dc": 40.0},
    "wl1_sig1": [3.51e-06, 33.0],
}


def test_merge_seaglider_calibrated(caplog):
    options = ProcessingOptions.load_processing_options(vehicle="seaglider")
    channels_d = _seaglider_channels()
    record = SensorMerge.merge_sensor_series(
        _seaglider_series(channels_d), options, "sg001", _seaglider_calibration
    )
    np.testing.assert_array_equal(record.time, channels_d["elaps_t"])
    pressure = Utils.sgdepth2pres(channels_d["depth"])
    np.testing.assert_allclose(record["pressure"], pressure)
    np.testing.assert_allclose(record["depth"], channels_d["depth"] / 100.0)
    temperature, conductivity = Utils.calibrate_sbe_ct(
        channels_d["sbect_tempFreq"],
        channels_d["sbect_condFreq"],
        pressure,
        sbect_temp_coefs,
        sbect_cond_coefs,
    )
    np.testing.assert_allclose(record["temperature"], temperature)
    np.testing.assert_allclose(record["conductivity"], conductivity)
    assert np.all((record["temperature"] > 0.0) & (record["temperature"] < 35.0))
    assert np.all((record["conductivity"] > 2.5) & (record["conductivity"] < 6.5))
    np.testing.assert_allclose(
        record["chlorophyll"], 0.0118 * (channels_d["wl1_Chlsig1"] - 38.0)
    )
    np.testing.assert_allclose(record["cdom"], 0.0878 * (channels_d["wl1_Cdomsig1"] - 40.0))
    np.testing.assert_allclose(
        record["scatter_650"], 3.51e-06 * (channels_d["wl1_sig1"] - 33.0)
    )
    assert record.attrs["temperature"]["calibration"] == "sbe_ct"
    assert record.attrs["temperature"]["source"] == "sbect_tempFreq"
    assert record.attrs["pressure"]["calibration"] == ""
    assert record.attrs["pressure"]["conversion"] == "sgdepth2pres"
    assert record.attrs["chlorophyll"]["calibration"] == "wleco_bbfl2"
    testutils.check_log(caplog, ["sensor found"])


def test_merge_deployment_calibration_overrides_options(caplog):
    options = ProcessingOptions.load_processing_options(
        {
            "calibration_parameters": {
                "sbect_tempFreq": [1.0, 0.0, 0.0, 0.0],
                "sbect_condFreq": sbect_cond_coefs,
            }
        },
        vehicle="seaglider",
    )
    channels_d = _seaglider_channels()
    record = SensorMerge.merge_sensor_series(
        _seaglider_series(channels_d),
        options,
        "sg001",
        {"sbect_tempFreq": sbect_temp_coefs},
    )
    temperature, _ = Utils.calibrate_sbe_ct(
        channels_d["sbect_tempFreq"],
        channels_d["sbect_condFreq"],
        Utils.sgdepth2pres(channels_d["depth"]),
        sbect_temp_coefs,
        sbect_cond_coefs,
    )
    np.testing.assert_allclose(record["temperature"], temperature)
    # No optics coefficients anywhere
    assert "chlorophyll" not in record
    assert "No calibration coefficients for ['wl1_Chlsig1', 'wl1_Cdomsig1', 'wl1_sig1']" in caplog.text


def test_merge_missing_calibration(caplog):
    options = ProcessingOptions.load_processing_options(
        {"calibration_parameters": {"sbect_tempFreq": sbect_temp_coefs}},
        vehicle="seaglider",
    )
    record = SensorMerge.merge_sensor_series(
        _seaglider_series(_seaglider_channels()), options, "sg001"
    )
    # Raw frequencies are never merged as temperature or conductivity
    for name in ("temperature", "conductivity", "pressure"):
        assert name not in record
    assert "depth" in record
    assert "No calibration coefficients for ['sbect_condFreq'] - ctd not merged" in caplog.text


def test_merge_bad_calibration_coefficients(caplog):
    options = ProcessingOptions.load_processing_options(vehicle="seaglider")
    calibration_d = dict(_seaglider_calibration, sbect_tempFreq=[1.0, 2.0])
    record = SensorMerge.merge_sensor_series(
        _seaglider_series(_seaglider_channels()), options, "sg001", calibration_d
    )
    assert "temperature" not in record
    assert "chlorophyll" in record
    assert "sbe_ct calibration of ctd failed" in caplog.text
