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

"""Routines for creating and managing the QC vectors

Each check is a pure function check(values, companions, params) -> flags, with one
flag per sample.  run_qc applies the configured checks in order and combines the
results per variable, keeping the most severe flag.
"""

import dataclasses
import time
import types

import numpy as np

import Globals
import Utils
from BaseLog import log_debug, log_info, log_warning
from ProcessingOptions import ConfigurationError

## For QC indications
# flags used by ARGO
QC_NO_CHANGE = 0  # no QC performed
QC_GOOD = 1  # ok
QC_PROBABLY_GOOD = 2  # ...
QC_PROBABLY_BAD = 3  # potentially correctable
QC_BAD = 4  # untrustworthy and irreperable
QC_MISSING = 9  # value missing -- instrument timed out

qc_name_d = {
    QC_NO_CHANGE: "QC_NO_CHANGE",
    QC_GOOD: "QC_GOOD",
    QC_PROBABLY_GOOD: "QC_PROBABLY_GOOD",
    QC_PROBABLY_BAD: "QC_PROBABLY_BAD",
    QC_BAD: "QC_BAD",
    QC_MISSING: "QC_MISSING",
}

qc_rev_name_d = dict((v, k) for k, v in qc_name_d.items())

good_qc_values = [QC_GOOD, QC_PROBABLY_GOOD]
bad_qc_values = [QC_PROBABLY_BAD, QC_BAD, QC_MISSING]

# Least to most severe
qc_severity_order = [
    QC_NO_CHANGE,
    QC_GOOD,
    QC_PROBABLY_GOOD,
    QC_PROBABLY_BAD,
    QC_BAD,
    QC_MISSING,
]
_qc_rank = np.zeros(max(qc_severity_order) + 1, dtype=np.int8)
for _rank, _qc in enumerate(qc_severity_order):
    _qc_rank[_qc] = _rank

# For metadata use
QC_flag_values = np.array(sorted(qc_name_d), dtype=np.int8)
QC_flag_meanings = " ".join(qc_name_d[k] for k in sorted(qc_name_d))

qc_dtype = np.int8


def initialize_qc(length, qc_tag=QC_NO_CHANGE):
    """Create a QC vector of the given length"""
    return np.full(length, qc_tag, dtype=qc_dtype)


def worst_qc(qc_v, new_qc_v):
    """Combines two QC vectors, keeping the more severe flag of each sample"""
    qc_v = np.asarray(qc_v, dtype=qc_dtype)
    new_qc_v = np.asarray(new_qc_v, dtype=qc_dtype)
    return np.where(_qc_rank[new_qc_v] > _qc_rank[qc_v], new_qc_v, qc_v).astype(
        qc_dtype
    )


def find_qc(qc_v, qc_values, mask=False):
    """Find the location (or provide a mask) of entries in qc_v with the given qc values
    Inputs:
    qc_v       - the qc array
    qc_values  - the qc values you are interested in
    mask       - whether you want a mask (True) or a set of indicies (False)

    Returns:
    indices_v  - location (or mask) of those qc values
    """
    hits = np.isin(qc_v, qc_values)
    return hits if mask else np.flatnonzero(hits)


def bad_qc(qc_v, mask=False):
    """By default return location (or mask) of all "bad" qc values"""
    return find_qc(qc_v, bad_qc_values, mask=mask)


def good_qc(qc_v, mask=False):
    """By default return location (or mask) of all "good" qc values"""
    return find_qc(qc_v, good_qc_values, mask=mask)


#
# Checks
#


def _evaluated(values):
    """QC_GOOD where there is a value to check, QC_NO_CHANGE elsewhere"""
    return np.where(np.isfinite(values), QC_GOOD, QC_NO_CHANGE).astype(qc_dtype)


def check_nan(values, companions, params):
    """Flags missing values"""
    flags = np.full(values.shape, QC_GOOD, dtype=qc_dtype)
    flags[np.isnan(values)] = params.get("flag", QC_MISSING)
    return flags


def _range_flags(values, min_value, max_value, flag):
    flags = _evaluated(values)
    with np.errstate(invalid="ignore"):
        out_of_range = (values < min_value) | (values > max_value)
    flags[out_of_range] = flag
    return flags


def check_range(values, companions, params):
    """Flags values outside [min, max]

    With depth_bands, min and max are lists with one entry per [start, end) band of
    the depth companion.  Samples outside every band pass (QC_GOOD where there is a value).
    """
    flag = params.get("flag", QC_BAD)
    bands = params.get("depth_bands")
    if not bands:
        return _range_flags(values, params["min"], params["max"], flag)
    depth = companions[params.get("depth", "depth")]
    flags = _evaluated(values)
    for (start, end), min_value, max_value in zip(bands, params["min"], params["max"]):
        with np.errstate(invalid="ignore"):
            in_band = (depth >= start) & (depth < end)
        flags[in_band] = _range_flags(values[in_band], min_value, max_value, flag)
    return flags


def check_spike(values, companions, params):
    """Flags samples that stand out from both non-missing neighbors

    The test value is |V2 - (V3 + V1)/2| - |(V3 - V1)/2|.  When a divider is given
    the threshold depends on the mean pressure of the three samples:
    threshold_deep below the divider, threshold_shallow above it.
    """
    flag = params.get("flag", QC_BAD)
    flags = _evaluated(values)
    valid_i = np.flatnonzero(np.isfinite(values))
    if valid_i.size < 3:
        return flags
    v = values[valid_i]
    v1, v2, v3 = v[:-2], v[1:-1], v[2:]
    test_value = np.abs(v2 - (v3 + v1) / 2.0) - np.abs((v3 - v1) / 2.0)
    if "divider" in params:
        p = companions[params.get("pressure", "pressure")][valid_i]
        window_pressure = (p[:-2] + p[1:-1] + p[2:]) / 3.0
        with np.errstate(invalid="ignore"):
            threshold = np.where(
                window_pressure > params["divider"],
                params["threshold_deep"],
                params["threshold_shallow"],
            )
    else:
        threshold = params["threshold"]
    flags[valid_i[1:-1][test_value >= threshold]] = flag
    return flags


def check_impossible_date(values, companions, params):
    """Flags times before the first glider deployments or in the future"""
    flag = params.get("flag", QC_BAD)
    min_time = params.get("min", Globals.earliest_valid_epoch)
    max_time = params.get("max", time.time())
    return _range_flags(values, min_time, max_time, flag)


def check_impossible_location(values, companions, params):
    """Flags positions off the globe - latitude and longitude are judged together"""
    flag = params.get("flag", QC_BAD)
    lat = companions[params.get("latitude", "latitude")]
    lon = companions[params.get("longitude", "longitude")]
    valid = np.isfinite(lat) & np.isfinite(lon)
    flags = np.where(valid, QC_GOOD, QC_NO_CHANGE).astype(qc_dtype)
    with np.errstate(invalid="ignore"):
        flags[valid & ((np.abs(lat) > 90.0) | (np.abs(lon) > 180.0))] = flag
    return flags


qc_checks_d = {
    "nan": check_nan,
    "range": check_range,
    "spike": check_spike,
    "impossible_date": check_impossible_date,
    "impossible_location": check_impossible_location,
}


#
# Options
#


@dataclasses.dataclass(frozen=True)
class QCCheck:
    """One configured check

    variables is a tuple of groups.  The check runs on the first member of a group
    and its flags are applied to every member.
    """

    check: str
    variables: tuple
    companions: tuple = ()
    params: types.MappingProxyType = dataclasses.field(
        default_factory=lambda: types.MappingProxyType({})
    )


@dataclasses.dataclass(frozen=True)
class QCOptions:
    check_all_for_nan: bool = True
    nan_flag: int = QC_MISSING
    checks: tuple = ()


default_qc_options_d = {
    "check_all_for_nan": True,
    "nan_flag": QC_MISSING,
    "checks": [
        {
            "check": "impossible_date",
            "variables": [
                "time",
                [
                    "time_ctd",
                    "temperature",
                    "conductivity",
                    "oxygen_concentration",
                    "oxygen_saturation",
                    "pressure",
                    "chlorophyll",
                    "turbidity",
                ],
            ],
        },
        {
            "check": "impossible_location",
            "variables": [["longitude", "latitude"]],
        },
        {
            "check": "range",
            "variables": ["temperature"],
            "params": {"min": -2.0, "max": 42.0},
        },
        {
            "check": "range",
            "variables": ["chlorophyll", "turbidity"],
            "params": {"min": 0.0, "max": 50.0},
        },
        {
            "check": "range",
            "variables": [["oxygen_concentration", "oxygen_saturation"]],
            "params": {"min": 0.0, "max": 500.0},
        },
        {
            "check": "range",
            "variables": [["oxygen_saturation", "oxygen_concentration"]],
            "params": {"min": 0.0, "max": 200.0},
        },
        {
            "check": "range",
            "variables": [["waypoint_latitude", "waypoint_longitude"]],
            "params": {"min": -90.0, "max": 90.0, "flag": QC_PROBABLY_BAD},
        },
        {
            "check": "range",
            "variables": [["waypoint_longitude", "waypoint_latitude"]],
            "params": {"min": -180.0, "max": 180.0, "flag": QC_PROBABLY_BAD},
        },
        {
            "check": "range",
            "variables": ["temperature"],
            "params": {
                "min": [0.0, 3.0, 3.0, 3.0, 3.0, 3.0],
                "max": [34.0, 30.0, 28.0, 26.0, 22.0, 20.0],
                "depth_bands": [
                    [0.0, 20.0],
                    [20.0, 50.0],
                    [50.0, 75.0],
                    [75.0, 150.0],
                    [150.0, 300.0],
                    [300.0, 1100.0],
                ],
            },
        },
        {
            "check": "spike",
            "variables": ["temperature"],
            "params": {"divider": 500.0, "threshold_deep": 6.0, "threshold_shallow": 2.0},
        },
        {"check": "spike", "variables": ["turbidity"], "params": {"threshold": 5.0}},
    ],
}


def _check_flag(flag, where):
    if flag not in qc_name_d:
        raise ConfigurationError(f"{where}:flag {flag} is not one of {sorted(qc_name_d)}")


def _number(params, key, where):
    try:
        return float(params[key])
    except KeyError as exc:
        raise ConfigurationError(f"{where} needs {key}") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{where}:{key} {params[key]} is not a number") from exc


def _validate_params(check, params, where):
    """Validates and normalizes the parameters of a check

    Returns:
        (params, companion names the check needs)
    """
    params = dict(params)
    needs = []
    if "flag" in params:
        _check_flag(params["flag"], where)
    if check == "range":
        if params.get("depth_bands"):
            bands = params["depth_bands"]
            try:
                bands = [(float(b[0]), float(b[1])) for b in bands]
                mins = [float(m) for m in params["min"]]
                maxs = [float(m) for m in params["max"]]
            except (KeyError, IndexError, TypeError, ValueError) as exc:
                raise ConfigurationError(
                    f"{where} - depth_bands need min and max lists"
                ) from exc
            if not len(bands) == len(mins) == len(maxs):
                raise ConfigurationError(
                    f"{where} - depth_bands, min and max differ in length"
                )
            params.update(depth_bands=tuple(bands), min=tuple(mins), max=tuple(maxs))
            needs.append(params.setdefault("depth", "depth"))
        else:
            params["min"] = _number(params, "min", where)
            params["max"] = _number(params, "max", where)
    elif check == "spike":
        if "divider" in params:
            for k in ("divider", "threshold_deep", "threshold_shallow"):
                params[k] = _number(params, k, where)
            needs.append(params.setdefault("pressure", "pressure"))
        else:
            params["threshold"] = _number(params, "threshold", where)
    elif check == "impossible_date":
        for k in ("min", "max"):
            if k in params:
                params[k] = _number(params, k, where)
    elif check == "impossible_location":
        needs.append(params.setdefault("latitude", "latitude"))
        needs.append(params.setdefault("longitude", "longitude"))
    return params, needs


def build_qc_options(qc_d):
    """Validates a qc options dict

    Raises:
        ConfigurationError on unknown checks or malformed parameters
    """
    if not isinstance(qc_d, dict):
        raise ConfigurationError("QC options must be a mapping")
    unknown = [k for k in qc_d if k not in ("check_all_for_nan", "nan_flag", "checks")]
    if unknown:
        raise ConfigurationError(f"Unknown qc options {unknown}")
    nan_flag = qc_d.get("nan_flag", QC_MISSING)
    _check_flag(nan_flag, "nan_flag")
    checks = []
    for ii, check_d in enumerate(qc_d.get("checks", []) or []):
        where = f"checks[{ii}]"
        if not isinstance(check_d, dict) or "check" not in check_d:
            raise ConfigurationError(f"{where} must be a mapping naming a check")
        unknown = [
            k for k in check_d if k not in ("check", "variables", "companions", "params")
        ]
        if unknown:
            raise ConfigurationError(f"{where} has unknown keys {unknown}")
        check = check_d["check"]
        if check not in qc_checks_d:
            raise ConfigurationError(
                f"{where} - unknown check {check} (known: {list(qc_checks_d)})"
            )
        variables = check_d.get("variables")
        if not variables or not isinstance(variables, list):
            raise ConfigurationError(f"{where} needs a list of variables")
        groups = []
        for v in variables:
            group = (v,) if isinstance(v, str) else tuple(v)
            if not group or not all(isinstance(g, str) for g in group):
                raise ConfigurationError(f"{where} - bad variable entry {v}")
            groups.append(group)
        params, needs = _validate_params(check, check_d.get("params") or {}, where)
        companions = list(check_d.get("companions") or [])
        for n in needs:
            if n not in companions:
                companions.append(n)
        checks.append(
            QCCheck(
                check=check,
                variables=tuple(groups),
                companions=tuple(companions),
                params=types.MappingProxyType(params),
            )
        )
    return QCOptions(
        check_all_for_nan=bool(qc_d.get("check_all_for_nan", True)),
        nan_flag=nan_flag,
        checks=tuple(checks),
    )


def load_qc_options(qc_d=None):
    """QC options from a dict, or the default battery of checks"""
    return build_qc_options(default_qc_options_d if qc_d is None else qc_d)


def qc_options_from_yaml(yaml_file):
    """Loads qc options from a yaml file"""
    try:
        qc_d = Utils.load_yaml(yaml_file)
    except Exception as exc:
        raise ConfigurationError(f"Could not load {yaml_file}") from exc
    log_info(f"Loaded qc options from {yaml_file}")
    return build_qc_options(qc_d)


#
# Running the checks
#


def report_qc(qc_d):
    """Logs a per variable summary of the flags"""
    for name, qc_v in qc_d.items():
        counts = {qc_name_d[q]: int(np.count_nonzero(qc_v == q)) for q in qc_name_d}
        flagged = {k: v for k, v in counts.items() if v and k != "QC_GOOD"}
        if flagged:
            log_info(f"QC {name}: {flagged} of {qc_v.size}")


def run_qc(record, qc_options):
    """Runs the configured checks over a MergedRecord

    Input:
        record - MergedRecord
        qc_options - QCOptions

    Returns:
        dict of variable name -> flag array, also attached to the record as record.qc
    """
    n_samples = len(record)
    qc_d = {name: initialize_qc(n_samples) for name in record.names()}

    if qc_options.check_all_for_nan:
        for name in qc_d:
            qc_d[name] = worst_qc(
                qc_d[name], check_nan(record[name], {}, {"flag": qc_options.nan_flag})
            )

    for check in qc_options.checks:
        func = qc_checks_d[check.check]
        missing = [c for c in check.companions if c not in record]
        for group in check.variables:
            target = group[0]
            if target not in record:
                log_debug(f"QC {check.check}: {target} not present - skipped")
                continue
            if missing:
                log_warning(
                    f"QC {check.check} on {target}: missing companions {missing} - skipped",
                    alert=record.deployment or None,
                )
                continue
            companions = {
                c: record[c] for c in group + check.companions if c in record
            }
            flags = func(record[target], companions, check.params)
            for member in group:
                if member not in record:
                    continue
                qc_d[member] = worst_qc(qc_d[member], flags)
            n_flagged = np.count_nonzero(np.isin(flags, bad_qc_values))
            if n_flagged:
                log_debug(
                    f"QC {check.check}: flagged {n_flagged}/{n_samples} of {list(group)}"
                )

    record.qc = qc_d
    report_qc(qc_d)
    return qc_d
