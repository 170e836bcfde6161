#! /usr/bin/env python
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

"""Batch driver - processes L0 deployment files into L1 timeseries and L2 gridded netcdf

Each L0 file is one deployment.  The stages of a deployment run in order; a failure
in any of them ends that deployment, and the batch carries on with the next one.
"""

import dataclasses
import os
import pathlib
import pdb
import sys
import time
import traceback

import BaseNetCDF
import BaseOpts
import Globals
import Gridding
import ProcessGliderData
import ProcessingOptions
import QC
import SensorMerge
import Utils
from BaseLog import (
    BaseLogger,
    log_alerts,
    log_critical,
    log_error,
    log_info,
    log_warning,
)

DEBUG_PDB = False


def DEBUG_PDB_F() -> None:
    """Enter the debugger on exceptions"""
    if DEBUG_PDB:
        _, __, tb = sys.exc_info()
        traceback.print_exc()
        pdb.post_mortem(tb)


@dataclasses.dataclass
class DeploymentStatus:
    """Outcome of processing one deployment"""

    deployment: str
    source: str
    stages_completed: list = dataclasses.field(default_factory=list)
    failed_stage: str | None = None
    cause: str = ""
    outputs: list = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed_stage is None


class OptionsCache:
    """Processing options per vehicle, built on first use from the user overrides"""

    def __init__(self, user_d=None, default_vehicle="slocum"):
        self.user_d = user_d
        self.default_vehicle = default_vehicle
        self._options_d = {}

    def get(self, vehicle=None):
        vehicle = vehicle or self.default_vehicle
        if vehicle not in self._options_d:
            self._options_d[vehicle] = ProcessingOptions.load_processing_options(
                self.user_d, vehicle
            )
        return self._options_d[vehicle]


def output_file_names(l0_file, deployment, output_dir=None):
    """L1 and L2 file names for a deployment"""
    out_dir = pathlib.Path(output_dir) if output_dir else pathlib.Path(l0_file).parent
    return (
        out_dir.joinpath(f"{deployment}_L1_timeseries.nc"),
        out_dir.joinpath(f"{deployment}_L2_gridded.nc"),
    )


def process_deployment(
    l0_file,
    options_cache,
    qc_options,
    output_dir=None,
    skip_gridding=False,
    depth_step=None,
):
    """Runs every stage for a single deployment

    Input:
        l0_file - L0 netcdf file for the deployment
        options_cache - OptionsCache, keyed by the vehicle attribute of the L0 file
        qc_options - QC.QCOptions
        output_dir - where the L1/L2 files go (defaults to the L0 file directory)
        skip_gridding - do not produce the L2 product
        depth_step - overrides the gridding depth step

    Returns:
        DeploymentStatus
    """
    l0_file = pathlib.Path(l0_file)
    status = DeploymentStatus(deployment=l0_file.stem, source=str(l0_file))
    stage = None
    record = gridded = None
    try:
        for stage in Globals.processing_stages:
            if stage == "load":
                deployment, series, l0_globals = BaseNetCDF.read_l0_file(l0_file)
                status.deployment = deployment
                options = options_cache.get(l0_globals.get("vehicle"))
            elif stage == "merge":
                record = SensorMerge.merge_sensor_series(
                    series,
                    options,
                    status.deployment,
                    ProcessingOptions.calibration_parameters_from_globals(l0_globals),
                )
            elif stage == "process":
                ProcessGliderData.process_glider_data(record, options)
            elif stage == "qc":
                QC.run_qc(record, qc_options)
            elif stage == "grid":
                if skip_gridding:
                    log_info(f"{status.deployment}: gridding skipped")
                    continue
                gridded = Gridding.grid_glider_data(
                    record, options.gridding, depth_step
                )
            elif stage == "write":
                l1_file, l2_file = output_file_names(
                    l0_file, status.deployment, output_dir
                )
                extra_d = {"source_file": l0_file.name, "vehicle": options.vehicle}
                BaseNetCDF.write_nc_file(
                    BaseNetCDF.make_l1_dataset(record, extra_d), l1_file
                )
                status.outputs.append(l1_file)
                if gridded is not None:
                    BaseNetCDF.write_nc_file(
                        BaseNetCDF.make_l2_dataset(
                            gridded, status.deployment, extra_d
                        ),
                        l2_file,
                    )
                    status.outputs.append(l2_file)
            status.stages_completed.append(stage)
    except Exception as exc:
        DEBUG_PDB_F()
        status.failed_stage = stage
        status.cause = f"{type(exc).__name__}: {exc}"
        log_error(
            f"{status.deployment}: stage {stage} failed ({status.cause}) - remaining stages skipped",
            "exc",
            alert=status.deployment,
        )
    return status


def process_deployments(
    l0_files,
    options_cache,
    qc_options,
    output_dir=None,
    skip_gridding=False,
    depth_step=None,
):
    """Processes each L0 file in turn - returns the list of DeploymentStatus"""
    statuses = []
    for l0_file in l0_files:
        log_info(f"Processing {l0_file}")
        statuses.append(
            process_deployment(
                l0_file,
                options_cache,
                qc_options,
                output_dir=output_dir,
                skip_gridding=skip_gridding,
                depth_step=depth_step,
            )
        )
    return statuses


def batch_summary(statuses):
    """Logs a summary of the batch - returns the number of failed deployments"""
    failed = [s for s in statuses if not s.ok]
    log_info(
        f"Processed {len(statuses)} deployments, {len(statuses) - len(failed)} succeeded"
    )
    for s in statuses:
        if s.ok:
            log_info(f"{s.deployment}: wrote {[str(o) for o in s.outputs]}")
        else:
            log_warning(
                f"{s.deployment}: aborted in stage {s.failed_stage} ({s.cause}) - completed {s.stages_completed}"
            )
    alerts_d = log_alerts()
    for deployment, alerts in alerts_d.items():
        log_info(f"{deployment}: {len(alerts)} alerts")
        for alert in alerts:
            log_info(f"    {alert}")
    return len(failed)


def main(cmdline_args: list[str] | None = None) -> int:
    """Command line driver for batch processing of L0 deployment files

    Returns:
        0 - every deployment was processed
        1 - one or more deployments failed, or the options could not be loaded
    """
    base_opts = BaseOpts.BaseOptions(
        "Processes glider L0 deployment files into L1 timeseries and L2 gridded netcdf files",
        cmdline_args=cmdline_args,
        calling_module="GliderProc",
    )
    BaseLogger(base_opts)

    global DEBUG_PDB
    DEBUG_PDB = base_opts.debug_pdb

    Utils.check_versions()

    if not base_opts.l0_files:
        log_error("No L0 files specified")
        return 1

    try:
        user_d = (
            Utils.load_yaml(base_opts.processing_options)
            if base_opts.processing_options
            else None
        )
        options_cache = OptionsCache(user_d, base_opts.vehicle)
        # Check the defaults and overrides up front for the command line vehicle
        options_cache.get()
        if base_opts.qc_options:
            qc_options = QC.qc_options_from_yaml(base_opts.qc_options)
        else:
            qc_options = QC.load_qc_options()
    except Exception:
        DEBUG_PDB_F()
        log_critical("Could not load the processing or qc options", "exc")
        return 1

    if base_opts.output_dir:
        pathlib.Path(base_opts.output_dir).mkdir(parents=True, exist_ok=True)

    statuses = process_deployments(
        base_opts.l0_files,
        options_cache,
        qc_options,
        output_dir=base_opts.output_dir or None,
        skip_gridding=base_opts.skip_gridding,
        depth_step=base_opts.depth_step or None,
    )
    return 1 if batch_summary(statuses) else 0


if __name__ == "__main__":
    retval = 1

    # Force to be in UTC
    os.environ["TZ"] = "UTC"
    time.tzset()

    try:
        retval = main()
    except Exception:
        DEBUG_PDB_F()
        log_critical("Unhandled exception in main -- exiting")

    sys.exit(retval)
