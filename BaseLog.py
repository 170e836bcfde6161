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

""" Glider processing wide logging infrastructure """

import argparse
import collections
import logging
import os
import traceback
from io import StringIO
from typing import DefaultDict, Dict, List

#                 debug,    info,      warning, error,    critical
_stack_options = ["caller", "caller", "caller", "caller", "exc"]  # default
# _stack_options = ['caller', None,      None,    None,     'exc'] # relative silence

_logger_name = "GliderProc"


class BaseLogger:
    """
    BaseLog: for use by all glider processing code and utilities
    """

    self = None  # the global instance
    is_initialized = False
    opts = None  # whatever starting options
    # Records always go to this logger - handlers are only added by the constructor
    log = logging.getLogger(_logger_name)

    # warnings, errors, and criticals are always enabled
    # -v turns on log_info, --debug turns on log_debug
    debug_enabled = info_enabled = False
    debug_loc, info_loc, warning_loc, error_loc, critical_loc = _stack_options

    # Alerts are keyed by deployment and are an appended list of strings
    alerts_d: Dict[str, List[str]] = {}

    # Stream to catch WARN-CRITICAL errors
    warn_error_stream: StringIO = StringIO()

    def __init__(self, opts: argparse.Namespace, include_time: bool = False) -> None:
        """
        Adds handlers to the processing logger, according to options (opts).
        """

        if not BaseLogger.is_initialized:
            BaseLogger.self = self
            BaseLogger.opts = opts

            BaseLogger.log.setLevel(logging.DEBUG)

            # create a file handler if log filename is specified in opts
            if opts is not None and getattr(opts, "base_log", ""):
                fh = logging.FileHandler(opts.base_log)
                self.setHandler(fh, opts, include_time)

            # always create a console handler
            sh = logging.StreamHandler()
            self.setHandler(sh, opts, include_time)

            # Catch warning, error and critical
            self.setHandler(
                logging.StreamHandler(stream=BaseLogger.warn_error_stream),
                None,
                include_time,
            )

            BaseLogger.is_initialized = True
            log_info("Process id = %d" % os.getpid())
            if getattr(opts, "config_file_not_found", False):
                log_warning(f"Config file {opts.config_file_name} was not found")

    def setHandler(
        self,
        handle: logging.Handler,
        opts: argparse.Namespace | None,
        include_time: bool,
    ) -> None:
        """
        Set a logging handle.
        """
        if include_time:
            formatter = logging.Formatter(
                "%(asctime)s: %(levelname)s: %(message)s", "%H:%M:%S %d %b %Y %Z"
            )
        else:
            # Remove timestamps for easier log comparison and reading
            formatter = logging.Formatter("%(levelname)s: %(message)s")

        if opts is not None:
            if opts.debug:
                BaseLogger.debug_enabled = True
                BaseLogger.info_enabled = True
                handle.setLevel(logging.DEBUG)
            elif opts.verbose:
                BaseLogger.info_enabled = True
                handle.setLevel(logging.INFO)
            else:
                handle.setLevel(logging.WARNING)
        else:
            handle.setLevel(logging.WARNING)

        handle.setFormatter(formatter)
        BaseLogger.log.addHandler(handle)

        logging.captureWarnings(True)
        warnings_logger = logging.getLogger("py.warnings")
        warnings_logger.addHandler(handle)

    def getLogger(self) -> logging.Logger:
        """getLogger: access function to log (static member)"""
        return BaseLogger.log


def __log_caller_info(s: object, loc: str | None) -> str:
    """Add stack or module: line number info for log caller to given string
    Input:
    s - object to be logged

    Return:
    string with possible location information added
    """
    s = str(s)
    if loc:
        try:
            # __log_caller_info(); log_XXXX; <caller>
            offset = 3
            if loc in ["caller", "parent"]:
                if loc == "parent":  # A utlity routine
                    offset = offset + 1
                frame = traceback.extract_stack(None, offset)[0]
                module, lineno, _, _ = frame
                module = os.path.basename(module)
                s = "%s(%d): %s" % (module, lineno, s)
            elif loc == "exc":
                exc = traceback.format_exc()
                if exc and not exc.startswith("NoneType: None"):
                    s = "%s:\n%s" % (s, exc)
            else:  # unknown location request
                s = "(%s?): %s" % (loc, s)
        except Exception:
            pass
    return s


def log_warn_errors() -> StringIO:
    """Fetch the stream capturing WARN/ERROR/CRITICAL"""
    return BaseLogger.warn_error_stream


def log_alerts() -> Dict[str, List[str]]:
    """Fetches the alerts dictionary"""
    return BaseLogger.alerts_d


def clear_alerts() -> None:
    """Drops all recorded alerts"""
    BaseLogger.alerts_d.clear()


def _log_alert(key: str, s: str) -> None:
    """Log a deployment alert"""
    if not isinstance(key, str):
        log_warning(f"{type(key)} in alerts", "exc")
        return
    BaseLogger.alerts_d.setdefault(key, []).append(s)


def _over_max_count(counts: DefaultDict[str, int], s: str, max_count: int) -> str | None:
    """Returns the (possibly annotated) message or None if it should be dropped

    A negative max_count indexes the count by message text as well as location
    """
    k = s.split(":")[0]
    if max_count < 0:
        k = f"{k}:{s}"
    counts[k] += 1
    if counts[k] == abs(max_count):
        return s + " (Max message count exceeded)"
    if counts[k] > abs(max_count):
        return None
    return s


# alert=None argument is optional to the log_X functions
# for easy searching, call like:
# log_error("Salinity could not be derived", alert="sg236_2024_spring")


def log_critical(
    s: object, loc: str = BaseLogger.critical_loc, alert: str | None = None
) -> None:
    """Report string to baselog as a CRITICAL error
    Args:
        s: msg to be logged
    """
    if alert:
        _log_alert(alert, "CRITICAL: %s" % s)
    BaseLogger.log.critical(__log_caller_info(s, loc))


log_error_max_count: DefaultDict[str, int] = collections.defaultdict(int)


def log_error(
    s: object,
    loc: str = BaseLogger.error_loc,
    alert: str | None = None,
    max_count: int | None = None,
) -> None:
    """Report string to baselog as an ERROR
    Args:
        s: msg to be logged
        alert: deployment this error is recorded against
    """
    alert_str = f"ERROR: {s}"
    s = __log_caller_info(s, loc)
    if max_count:
        s = _over_max_count(log_error_max_count, s, max_count)
        if s is None:
            return
    if alert:
        _log_alert(alert, alert_str)
    BaseLogger.log.error(s)


log_warning_max_count: DefaultDict[str, int] = collections.defaultdict(int)


def log_warning(
    s: object,
    loc: str = BaseLogger.warning_loc,
    alert: str | None = None,
    max_count: int | None = None,
) -> None:
    """Report string to baselog as a WARNING
    Input:
    s - string to be logged
    alert - deployment this warning should be recorded against
    max_count - maximum number of times this warning should be issued.
                if a positive value, the count is indexed by the module name and line number
                if a negative value, the count is indexed by the module name, line number and warning string
    """
    alert_str = f"WARNING: {s}"
    s = __log_caller_info(s, loc)
    if max_count:
        s = _over_max_count(log_warning_max_count, s, max_count)
        if s is None:
            return
    if alert:
        _log_alert(alert, alert_str)
    BaseLogger.log.warning(s)


log_info_max_count: DefaultDict[str, int] = collections.defaultdict(int)


def log_info(
    s: object,
    loc: str = BaseLogger.info_loc,
    alert: str | None = None,
    max_count: int | None = None,
) -> None:
    """Report string to baselog as INFO
    Args:
        s: msg to be logged
    """
    if not BaseLogger.info_enabled:
        return
    s = __log_caller_info(s, loc)
    if max_count:
        s = _over_max_count(log_info_max_count, s, max_count)
        if s is None:
            return
    if alert:
        _log_alert(alert, f"INFO: {s}")
    BaseLogger.log.info(s)


def log_debug(
    s: object,
    loc: str | None = BaseLogger.debug_loc,
) -> None:
    """Report string to baselog as DEBUG info"""
    if not BaseLogger.debug_enabled:
        return
    BaseLogger.log.debug(__log_caller_info(s, loc))
