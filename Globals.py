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


"""
Minimum package versions and common class definitions
"""

from enum import IntEnum

# These document file format versions
# All recorded as globals.file_version in their respective files
l1_timeseries_nc_fileversion = "1.0"
l2_gridded_nc_fileversion = "1.0"
# These document level of functionality
glider_proc_version = "1.0.0"
quality_control_version = "1.0"

# Version stamps for various packages
required_python_version = (3, 10, 9)
required_numpy_version = "1.19.1"
required_scipy_version = "1.9.0"
required_seawater_version = "3.3.4"
required_gsw_version = "3.3.1"

# Used in the netcdf output for missing values
fill_value = -999.0

# Timestamps before this are not considered real deployment data (2007-01-01T00:00:00Z)
earliest_valid_epoch = 1167609600.0


# pylint: disable=E0239
class ProfileDirection(IntEnum):
    """Vertical direction of a sample or profile"""

    ascending = -1
    inflection = 0
    descending = 1


# Processing stages, in the order they are run for each deployment
processing_stages = ["load", "merge", "process", "qc", "grid", "write"]

known_vehicles = ["slocum", "seaglider", "seaexplorer"]
