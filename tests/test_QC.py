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

import time

import numpy as np
import pytest
import testutils
import yaml

import QC
from ProcessingOptions import ConfigurationError


@pytest.mark.parametrize(
    "old,new,expected",
    (
        (QC.QC_NO_CHANGE, QC.QC_GOOD, QC.QC_GOOD),
        (QC.QC_GOOD, QC.QC_NO_CHANGE, QC.QC_GOOD),
        (QC.QC_PROBABLY_GOOD, QC.QC_GOOD, QC.QC_PROBABLY_GOOD),
        (QC.QC_BAD, QC.QC_PROBABLY_BAD, QC.QC_BAD),
        (QC.QC_BAD, QC.QC_MISSING, QC.QC_MISSING),
        (QC.QC_MISSING, QC.QC_PROBABLY_GOOD, QC.QC_MISSING),
    ),
)
def test_worst_qc(old, new, expected):
    assert QC.worst_qc([old], [new])[0] == expected


def test_find_qc():
    qc_v = np.array([0, 1, 2, 3, 4, 9], dtype=QC.qc_dtype)
    np.testing.assert_array_equal(QC.bad_qc(qc_v), [3, 4, 5])
    np.testing.assert_array_equal(QC.good_qc(qc_v), [1, 2])
    np.testing.assert_array_equal(
        QC.bad_qc(qc_v, mask=True), [False, False, False, True, True, True]
    )


def test_check_range_bounds_inclusive():
    values = np.array([-2.0, 42.0, 42.0001, -2.1, np.nan])
    flags = QC.check_range(values, {}, {"min": -2.0, "max": 42.0})
    np.testing.assert_array_equal(
        flags, [QC.QC_GOOD, QC.QC_GOOD, QC.QC_BAD, QC.QC_BAD, QC.QC_NO_CHANGE]
    )


def test_check_range_depth_bands():
    params = {
        "min": (0.0, 3.0),
        "max": (34.0, 30.0),
        "depth_bands": ((0.0, 20.0), (20.0, 50.0)),
        "depth": "depth",
    }
    values = np.array([35.0, 29.0, 31.0, 50.0, 10.0])
    depth = np.array([10.0, 20.0, 49.9, 50.0, np.nan])
    flags = QC.check_range(values, {"depth": depth}, params)
    np.testing.assert_array_equal(
        flags,
        [QC.QC_BAD, QC.QC_GOOD, QC.QC_BAD, QC.QC_GOOD, QC.QC_GOOD],
    )


@pytest.mark.parametrize(
    "values,expected",
    (
        ([1.0, 1.0, 10.0, 1.0, 1.0], [1, 1, 4, 1, 1]),
        ([1.0, 1.0, 6.0, 1.0, 1.0], [1, 1, 4, 1, 1]),  # at the threshold
        ([1.0, 1.0, 5.9, 1.0, 1.0], [1, 1, 1, 1, 1]),
        ([1.0, np.nan, 10.0, 1.0], [1, 0, 4, 1]),  # missing neighbors are skipped
        ([1.0, 10.0], [1, 1]),
    ),
)
def test_check_spike(values, expected):
    flags = QC.check_spike(np.array(values), {}, {"threshold": 5.0})
    np.testing.assert_array_equal(flags, expected)


@pytest.mark.parametrize("pressure,expected", ((600.0, QC.QC_GOOD), (100.0, QC.QC_BAD)))
def test_check_spike_pressure_dependent(pressure, expected):
    params = {
        "divider": 500.0,
        "threshold_deep": 6.0,
        "threshold_shallow": 2.0,
        "pressure": "pressure",
    }
    values = np.array([1.0, 1.0, 4.0, 1.0, 1.0])
    flags = QC.check_spike(values, {"pressure": np.full(5, pressure)}, params)
    assert flags[2] == expected


@pytest.mark.parametrize(
    "pressure,expected", ((100.0, QC.QC_BAD), (600.0, QC.QC_GOOD), (900.0, QC.QC_BAD))
)
def test_default_temperature_spike(pressure, expected):
    time_v = testutils.start_time + np.arange(5.0)
    # Test value of 3 at shallow and deep pressures, 7 at the deepest
    temperature = np.array([10.0, 10.0, 17.0 if pressure > 800.0 else 13.0, 10.0, 10.0])
    record = testutils.make_record(
        time_v,
        temperature=temperature,
        pressure=np.full(5, pressure),
        depth=np.full(5, pressure),
    )
    qc_d = QC.run_qc(record, QC.load_qc_options())
    assert qc_d["temperature"][2] == expected


def test_qc_check_default_params():
    check = QC.QCCheck("nan", (("x",),))
    assert dict(check.params) == {}
    assert check.companions == ()
    assert QC.QCCheck("nan", (("y",),)).params is not check.params


def test_check_impossible_date():
    now = time.time()
    values = np.array([1.0e9, 1.7e9, now + 86400.0, np.nan])
    np.testing.assert_array_equal(
        QC.check_impossible_date(values, {}, {}),
        [QC.QC_BAD, QC.QC_GOOD, QC.QC_BAD, QC.QC_NO_CHANGE],
    )


def test_check_impossible_location():
    lat = np.array([47.5, 91.0, 10.0, np.nan])
    lon = np.array([-122.25, 0.0, -181.0, 10.0])
    flags = QC.check_impossible_location(
        lon, {"latitude": lat, "longitude": lon}, {}
    )
    np.testing.assert_array_equal(
        flags, [QC.QC_GOOD, QC.QC_BAD, QC.QC_BAD, QC.QC_NO_CHANGE]
    )


def test_default_qc_options():
    qc_options = QC.load_qc_options()
    assert qc_options.check_all_for_nan
    band_check = [c for c in qc_options.checks if "depth_bands" in c.params][0]
    assert "depth" in band_check.companions
    location_check = [c for c in qc_options.checks if c.check == "impossible_location"][0]
    assert location_check.variables == (("longitude", "latitude"),)


@pytest.mark.parametrize(
    "qc_d,msg",
    (
        ({"checks": [{"check": "gradient", "variables": ["temperature"]}]}, "unknown check"),
        ({"checks": [{"check": "range", "variables": ["temperature"]}]}, "needs min"),
        (
            {
                "checks": [
                    {
                        "check": "range",
                        "variables": ["temperature"],
                        "params": {"min": [0.0], "max": [1.0, 2.0], "depth_bands": [[0, 1]]},
                    }
                ]
            },
            "differ in length",
        ),
        ({"checks": [{"check": "range"}]}, "list of variables"),
        ({"nan_flag": 7}, "flag 7"),
        ({"gradient": True}, "Unknown qc options"),
    ),
)
def test_qc_configuration_errors(qc_d, msg):
    with pytest.raises(ConfigurationError, match=msg):
        QC.build_qc_options(qc_d)


def test_qc_options_from_yaml(tmp_path):
    yaml_file = tmp_path.joinpath("qc.yml")
    yaml_file.write_text(
        yaml.safe_dump(
            {
                "check_all_for_nan": False,
                "checks": [
                    {"check": "spike", "variables": ["turbidity"], "params": {"threshold": 2}}
                ],
            }
        )
    )
    qc_options = QC.qc_options_from_yaml(yaml_file)
    assert not qc_options.check_all_for_nan
    assert qc_options.checks[0].params["threshold"] == 2.0


def _qc_record():
    time_v = testutils.start_time + np.arange(6.0)
    return testutils.make_record(
        time_v,
        temperature=np.array([10.0, 11.0, 50.0, 12.0, np.nan, 13.0]),
        conductivity=np.array([4.0, 4.1, 4.2, 4.3, 4.4, 4.5]),
        depth=np.array([5.0, 10.0, 15.0, 25.0, 30.0, 35.0]),
    )


def test_run_qc_groups(caplog):
    record = _qc_record()
    qc_options = QC.load_qc_options(
        {
            "checks": [
                {
                    "check": "range",
                    "variables": [["temperature", "conductivity"]],
                    "params": {"min": -2.0, "max": 40.0},
                }
            ]
        }
    )
    qc_d = QC.run_qc(record, qc_options)
    assert record.qc is qc_d
    np.testing.assert_array_equal(qc_d["temperature"], [1, 1, 4, 1, 9, 1])
    # Flags of the group leader apply to every member
    np.testing.assert_array_equal(qc_d["conductivity"], [1, 1, 4, 1, 1, 1])
    np.testing.assert_array_equal(qc_d["depth"], np.ones(6))
    testutils.check_log(caplog, [])


def test_run_qc_missing_companion(caplog):
    record = _qc_record()
    qc_options = QC.load_qc_options(
        {
            "checks": [
                {
                    "check": "range",
                    "variables": ["temperature"],
                    "params": {
                        "min": [0.0],
                        "max": [20.0],
                        "depth_bands": [[0.0, 100.0]],
                        "depth": "depth_ctd",
                    },
                },
                {"check": "range", "variables": ["oxygen_concentration"], "params": {"min": 0, "max": 1}},
            ]
        }
    )
    qc_d = QC.run_qc(record, qc_options)
    assert "missing companions ['depth_ctd']" in caplog.text
    assert "oxygen_concentration" not in qc_d
    np.testing.assert_array_equal(qc_d["temperature"], [1, 1, 1, 1, 9, 1])


def test_run_default_checks():
    record = _qc_record()
    qc_d = QC.run_qc(record, QC.load_qc_options())
    # 50 degrees is out of range and a spike
    assert qc_d["temperature"][2] == QC.QC_BAD
    assert qc_d["temperature"][4] == QC.QC_MISSING
    assert qc_d["time"][0] == QC.QC_GOOD
