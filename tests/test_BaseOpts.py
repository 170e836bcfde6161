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

import pytest

import BaseOpts


def glider_proc_options(cmdline_args):
    return BaseOpts.BaseOptions(
        "Test options", cmdline_args=cmdline_args, calling_module="GliderProc"
    )


def test_defaults():
    base_opts = glider_proc_options([])
    assert base_opts.l0_files == []
    assert base_opts.vehicle == "slocum"
    assert base_opts.depth_step == 0.0
    assert base_opts.skip_gridding is False
    assert base_opts.processing_options == ""
    assert not base_opts.config_file_not_found


def test_command_line(tmp_path):
    base_opts = glider_proc_options(
        [
            "--vehicle",
            "seaglider",
            "--depth_step",
            "2.5",
            "--skip_gridding",
            "--output_dir",
            str(tmp_path),
            "a.nc",
            "b.nc",
        ]
    )
    assert base_opts.vehicle == "seaglider"
    assert base_opts.depth_step == 2.5
    assert base_opts.skip_gridding
    assert base_opts.output_dir == str(tmp_path)
    assert [p.endswith(n) for p, n in zip(base_opts.l0_files, ("a.nc", "b.nc"))] == [
        True,
        True,
    ]


@pytest.mark.parametrize(
    "cmdline_args",
    (
        ["--depth_step", "-1"],
        ["--depth_step", "5000"],
        ["--vehicle", "rov"],
    ),
)
def test_bad_command_line(cmdline_args):
    with pytest.raises(SystemExit):
        glider_proc_options(cmdline_args)


def test_config_file(tmp_path):
    conf_file = tmp_path.joinpath("glider_proc.conf")
    conf_file.write_text(
        "[processing]\nvehicle = seaexplorer\n[output]\ndepth_step = 4\nskip_gridding = yes\n"
    )
    base_opts = glider_proc_options(
        ["--config", str(conf_file), "--vehicle", "seaglider", "--depth_step", "2"]
    )
    # The config file trumps the command line
    assert base_opts.vehicle == "seaexplorer"
    assert base_opts.depth_step == 4.0
    assert base_opts.skip_gridding is True
    # Options not in the config file keep their command line values
    assert base_opts.output_dir == ""


def test_config_file_errors(tmp_path):
    conf_file = tmp_path.joinpath("glider_proc.conf")
    conf_file.write_text("[output]\ndepth_step = 2000\n")
    with pytest.raises(ValueError, match="outside of range"):
        glider_proc_options(["--config", str(conf_file)])

    conf_file.write_text("[output]\nskip_gridding = maybe\n")
    with pytest.raises(ValueError, match="to boolean"):
        glider_proc_options(["--config", str(conf_file)])


def test_missing_config_file(tmp_path):
    base_opts = glider_proc_options(["--config", str(tmp_path.joinpath("none.conf"))])
    assert base_opts.config_file_not_found
    assert base_opts.vehicle == "slocum"


def test_generate_sample_conf(capsys):
    with pytest.raises(SystemExit):
        glider_proc_options(["--generate_sample_conf"])
    out = capsys.readouterr().out
    assert "[processing]" in out
    assert "#vehicle = " in out
    assert "#depth_step = " in out
