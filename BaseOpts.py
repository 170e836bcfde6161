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
  Common set of options for glider processing
  Default values supplemented by option processing, both config file and command line
"""

import argparse
import configparser
import copy
import dataclasses
import inspect
import os
import sys
import typing

import Globals


def generate_range_action(arg, min_val, max_val):
    """Creates an range checking action for argparse"""

    class RangeAction(argparse.Action):
        """Range checking action"""

        def __call__(self, parser, namespace, values, option_string=None):
            if values is None:
                raise argparse.ArgumentError(
                    self, f"None is not valid for argument [{arg}]"
                )

            if not min_val <= values <= max_val:
                raise argparse.ArgumentError(
                    self, f"{values} not in range for argument [{arg}]"
                )
            setattr(namespace, self.dest, values)

    return RangeAction


def FullPath(x):
    """Expand user- and relative-paths"""
    # An unspecified nargs=? argument comes through here with the empty default
    if x == "":
        return x

    if isinstance(x, list):
        return list(map(lambda y: os.path.abspath(os.path.expanduser(y)), x))
    else:
        return os.path.abspath(os.path.expanduser(x))


class FullPathAction(argparse.Action):
    """Expand user- and relative-paths"""

    def __call__(self, parser, namespace, values, option_string=None):
        if values is not None:
            setattr(namespace, self.dest, FullPath(values))
        else:
            setattr(namespace, self.dest, values)


def generate_sample_conf_file(options_dict, calling_module):
    """Generates a sample .conf file (to stdout)"""
    sort_options_dict = dict(
        sorted(
            options_dict.items(),
            key=lambda x: x[1].kwargs["section"] if "section" in x[1].kwargs else "",
        )
    )

    seen_sections = set()

    print(f"#\n# Sample conf file for {calling_module}.py\n#")
    print(f"# Generated with python {calling_module}.py --generate_sample_conf\n#")
    print("[base]")

    for opt_n, opt_v in sort_options_dict.items():
        if opt_n in ("config_file_name", "generate_sample_conf", "l0_files"):
            continue
        if opt_v.group is None or calling_module in opt_v.group:
            section_name = opt_v.kwargs["section"] if "section" in opt_v.kwargs else ""
            if section_name not in seen_sections and section_name:
                print(f"#\n[{section_name}]")
                seen_sections.add(section_name)
            print(f"#\n# {opt_v.kwargs['help']}")
            print(f"#{opt_n} = ", end="")
            if opt_v.var_type is bool:
                print(f"{int(opt_v.default_val)}")
            elif opt_v.var_type is FullPath:
                print("<path_to_file>")
            elif isinstance(opt_v.default_val, list):
                print(",".join(str(x) for x in opt_v.default_val))
            else:
                print(f"{opt_v.default_val}")


# The kwargs in this type is overloaded.  Everything that is legit for argparse is allowed.
# Additionally, there is:
#
# range:list - two element list of the min and max allowed for an argument (inclusive).
# section:str - name of the section where the argument is loaded in the config file
# option_group:str - name of the option group to include the option in (for help)
@dataclasses.dataclass
class options_t:
    """Data that drives options processing"""

    default_val: typing.Any
    group: set
    args: tuple
    var_type: typing.Any
    kwargs: dict

    def __post_init__(self):
        """Type conversions"""
        if not isinstance(self.args, tuple):
            raise ValueError("args is not a tuple")
        if self.group is not None and not isinstance(self.group, set):
            self.group = set(self.group)
        if not isinstance(self.kwargs, dict):
            raise ValueError("kwargs is not a dict")


global_options_dict = {
    "generate_sample_conf": options_t(
        False,
        None,
        ("--generate_sample_conf",),
        bool,
        {
            "help": "Generates a sample conf file to stdout",
            "action": "store_true",
        },
    ),
    "config_file_name": options_t(
        None,  # Never added to the options object, just used by the argparse
        None,
        ("--config", "-c"),
        FullPath,
        {"help": "script configuration file", "action": FullPathAction},
    ),
    "base_log": options_t(
        "",
        None,
        ("--base_log",),
        FullPath,
        {
            "help": "processing log file, records all levels of notifications",
            "action": FullPathAction,
        },
    ),
    "debug": options_t(
        False,
        None,
        ("--debug",),
        bool,
        {
            "action": "store_true",
            "help": "log/display debug messages",
        },
    ),
    "verbose": options_t(
        False,
        None,
        (
            "--verbose",
            "-v",
        ),
        bool,
        {
            "action": "store_true",
            "help": "print status messages to stdout",
        },
    ),
    "debug_pdb": options_t(
        False,
        None,
        ("--debug_pdb",),
        bool,
        {
            "action": "store_true",
            "help": "drop into pdb on an unhandled exception",
        },
    ),
    #
    "l0_files": options_t(
        [],
        ("GliderProc",),
        ("l0_files",),
        FullPath,
        {
            "help": "L0 netcdf files to process - one deployment per file",
            "nargs": "*",
        },
    ),
    "vehicle": options_t(
        "slocum",
        ("GliderProc",),
        ("--vehicle",),
        str,
        {
            "help": "Vehicle type - selects the built in processing options",
            "choices": Globals.known_vehicles,
            "section": "processing",
            "option_group": "processing",
        },
    ),
    "processing_options": options_t(
        "",
        ("GliderProc",),
        ("--processing_options",),
        FullPath,
        {
            "help": "YAML file with processing options (overrides the vehicle defaults)",
            "action": FullPathAction,
            "section": "processing",
            "option_group": "processing",
        },
    ),
    "qc_options": options_t(
        "",
        ("GliderProc",),
        ("--qc_options",),
        FullPath,
        {
            "help": "YAML file with the quality control checks (default checks are used otherwise)",
            "action": FullPathAction,
            "section": "processing",
            "option_group": "processing",
        },
    ),
    "output_dir": options_t(
        "",
        ("GliderProc",),
        ("--output_dir",),
        FullPath,
        {
            "help": "Directory for the L1 and L2 netcdf files (defaults to the L0 file directory)",
            "action": FullPathAction,
            "section": "output",
            "option_group": "output",
        },
    ),
    "skip_gridding": options_t(
        False,
        ("GliderProc",),
        ("--skip_gridding",),
        bool,
        {
            "help": "Do not produce the L2 gridded product",
            "action": argparse.BooleanOptionalAction,
            "section": "output",
            "option_group": "output",
        },
    ),
    "depth_step": options_t(
        0.0,
        ("GliderProc",),
        ("--depth_step",),
        float,
        {
            "help": "Override the gridding depth bin size (meters) - 0 uses the processing options value",
            "range": [0.0, 1000.0],
            "section": "output",
            "option_group": "output",
        },
    ),
}

option_group_description = {
    "processing": "Processing and quality control options",
    "output": "Output product options",
}


class CustomFormatter(
    argparse.ArgumentDefaultsHelpFormatter, argparse.RawDescriptionHelpFormatter
):
    """Allow for multiple formatters for help"""


class BaseOptions:
    """
    BaseOptions: for use by all glider processing code and utilities.
       Defaults are trumped by command-line arguments;
       command-line arguments are trumped by options listed in the configuration file.
    """

    def __init__(
        self,
        description,
        additional_arguments=None,
        cmdline_args=None,
        calling_module=None,
    ):
        """
        Input:
            additional_arguments - dictionay of additional arguments - specific
                                   to a single module
            cmdline_args - alternate command line - a list equivalent to sys.argv[1:]
            calling_module - name of the module whose options are processed
        """

        self._opts = None  # Retained for debugging
        self._ap = None  # Retained for debugging

        if calling_module is None:
            calling_module = os.path.splitext(
                os.path.split(inspect.stack()[1].filename)[1]
            )[0]

        if additional_arguments is not None:
            options_dict = global_options_dict | additional_arguments
        else:
            options_dict = global_options_dict

        if cmdline_args is None:
            cmdline_args = sys.argv[1:]

        if "--generate_sample_conf" in cmdline_args:
            generate_sample_conf_file(options_dict, calling_module)
            sys.exit(0)

        cp_default = {}
        for k, v in options_dict.items():
            if v.group is None or calling_module in v.group:
                setattr(self, k, v.default_val)  # Set the default for the object
            cp_default[k] = None

        cp = configparser.RawConfigParser(cp_default)

        ap = argparse.ArgumentParser(
            description=description, formatter_class=CustomFormatter
        )

        option_group_dict = {}
        for k, v in options_dict.items():
            if v.group is None or calling_module in v.group:
                og = v.kwargs.get("option_group")
                if og is not None and og not in option_group_dict:
                    option_group_dict[og] = ap.add_argument_group(
                        og, option_group_description[og]
                    )

        # Loop over potential arguments and add what is approriate
        for k, v in options_dict.items():
            if v.group is None or calling_module in v.group:
                kwargs = copy.deepcopy(v.kwargs)
                if not (v.var_type == bool and "action" in v.kwargs.keys()):
                    kwargs["type"] = v.var_type
                if v.args and v.args[0].startswith("-"):
                    kwargs["dest"] = k
                kwargs["default"] = v.default_val
                if "section" in kwargs.keys():
                    del kwargs["section"]
                if (
                    "range" in kwargs.keys()
                    and isinstance(kwargs["range"], list)
                    and len(kwargs["range"]) == 2
                ):
                    min_val = kwargs["range"][0]
                    max_val = kwargs["range"][1]
                    kwargs["action"] = generate_range_action(k, min_val, max_val)
                    del kwargs["range"]
                    kwargs["metavar"] = f"{{{min_val}..{max_val}}}"

                if "option_group" in kwargs.keys():
                    og = kwargs["option_group"]
                    del kwargs["option_group"]
                    option_group_dict[og].add_argument(*v.args, **kwargs)
                else:
                    ap.add_argument(*v.args, **kwargs)

        self._ap = ap
        self._opts = ap.parse_args(cmdline_args)

        # Initialize the object with the results of the command line parse
        for opt in dir(self._opts):
            if opt in options_dict.keys():
                setattr(self, opt, getattr(self._opts, opt))

        # Config file trumps command line - a master command line can be
        # customized per deployment collection
        self.config_file_not_found = False
        if self._opts.config_file_name is not None:
            if not os.path.exists(self._opts.config_file_name):
                self.config_file_not_found = True
            try:
                cp.read(self._opts.config_file_name)
            except Exception as exc:
                raise RuntimeError(
                    f"ERROR parsing {self._opts.config_file_name}"
                ) from exc
            for k, v in options_dict.items():
                if k == "config_file_name":
                    continue
                if v.group is not None and calling_module not in v.group:
                    continue
                self._apply_config_value(cp, k, v)

    def _apply_config_value(self, cp, k, v):
        """Sets a single option from the config file, if present"""
        section_name = v.kwargs.get("section", "base")
        # Every option has a None default in the parser, so has_option alone is not enough
        if not cp.has_section(section_name) or cp.get(section_name, k) is None:
            return
        if v.var_type == bool:
            try:
                value = cp.getboolean(section_name, k)
            except ValueError as exc:
                raise ValueError(
                    f"Could not convert {k} from {self._opts.config_file_name} to boolean"
                ) from exc
        else:
            value = cp.get(section_name, k)
            if value is None:
                return
            if isinstance(v.default_val, list):
                value = [x.strip() for x in value.split(",") if x.strip()]
                if v.var_type is FullPath:
                    value = FullPath(value)
            else:
                try:
                    value = v.var_type(value)
                except ValueError as exc:
                    raise ValueError(
                        f"Could not convert {k} from {self._opts.config_file_name} to requested type"
                    ) from exc
                if "range" in v.kwargs and len(v.kwargs["range"]) == 2:
                    min_val, max_val = v.kwargs["range"]
                    if not min_val <= value <= max_val:
                        raise ValueError(
                            f"{k}:{value} outside of range {min_val} {max_val}"
                        )
        setattr(self, k, value)
