"""Terminal status screen for a running fuzzing session."""

from __future__ import annotations

import atexit
import logging
import os
import sys
import threading
import time
from typing import IO, Sequence

from hfuzzcfg.config import DynFileMethod, FuzzConfig, FuzzState

log = logging.getLogger(__name__)

PROG_NAME = "honggfuzz"
PROG_VERSION = "2.6"

CMDLINE_TXT_MAX = 64

ESC_CLEAR_ALL = "\033[2J"
ESC_CLEAR_LINE = "\033[2K"
ESC_CLEAR_ABOVE = "\033[1J"
ESC_TERM_RESET = "\033c"
ESC_BOLD = "\033[1m"
ESC_RED = "\033[31m"
ESC_RESET = "\033[0m"
ESC_SCROLL_DISABLE = "\033[?7h"
ESC_SCROLL_RESET = "\033[r"
ESC_RESET_SETTINGS = "\033[!p"

_U64_MASK = (1 << 64) - 1


def _nav(x: int, y: int) -> str:
    return f"\033[{x};{y}H"


def _nav_down(x: int) -> str:
    return f"\033[{x}B"


def _nav_horiz(x: int) -> str:
    return f"\033[{x}G"


def _scroll_region(x: int, y: int | str = "") -> str:
    return f"\033[{x};{y}r"


def _bold(text: object) -> str:
    return f"{ESC_BOLD}{text}{ESC_RESET}"


def format_kmg(value: int) -> str:
    """Return a short ' [x.xxK/M/G/T]' suffix for large numbers, or '' below 1000."""
    if value >= 1_000_000_000_000:
        # The terabyte branch divides by 10^9, as the status screen always has.
        return f" [{value / 1_000_000_000.0:.2f}T]"
    if value >= 1_000_000_000:
        return f" [{value / 1_000_000_000.0:.2f}G]"
    if value >= 1_000_000:
        return f" [{value / 1_000_000.0:.2f}M]"
    if value >= 1000:
        return f" [{value / 1000.0:.2f}k]"
    return ""


def format_duration(elapsed_seconds: int) -> str:
    """Format a number of seconds as days, hours, minutes and seconds."""
    if elapsed_seconds < 0:
        return "----"
    days, rest = divmod(int(elapsed_seconds), 24 * 3600)
    hours, rest = divmod(rest, 3600)
    minutes, seconds = divmod(rest, 60)
    return f"{days} days {hours:02d} hrs {minutes:02d} mins {seconds:02d} secs"


def create_target_str(cmdline: Sequence[str]) -> str:
    """Build the shortened command-line text shown as the fuzzing target."""
    if not cmdline or not cmdline[0]:
        log.warning("Your fuzzed binary is not specified")
        return "[EMPTY]"
    full = " ".join(cmdline)
    if len(full) <= CMDLINE_TXT_MAX:
        return full
    return f"{full[:32]}.....{full[-27:]}"


class CpuUsage:
    """Tracks CPU tick counters between samples and reports the busy percentage."""

    def __init__(self) -> None:
        self._prev = (0, 0, 0, 0)

    def update(self, user: int, nice: int, system: int, idle: int, num_cpus: int) -> int:
        """Record new tick totals and return the CPU use (100 per fully busy CPU)."""
        prev_user, prev_nice, prev_system, prev_idle = self._prev
        user_c = (user - prev_user) & _U64_MASK
        nice_c = (nice - prev_nice) & _U64_MASK
        system_c = (system - prev_system) & _U64_MASK
        idle_c = (idle - prev_idle) & _U64_MASK
        self._prev = (user, nice, system, idle)

        all_c = (user_c + nice_c + system_c + idle_c) & _U64_MASK
        if all_c == 0:
            return 0
        busy = (user_c + nice_c + system_c) & _U64_MASK
        return (busy * num_cpus * 100) // all_c

    def sample(self, num_cpus: int) -> int:
        """Read the system's CPU tick counters and return the current CPU use."""
        try:
            with open("/proc/stat", encoding="ascii") as stat:
                first = stat.readline()
        except OSError:
            return 0
        fields = first.split()
        if len(fields) < 5 or fields[0] != "cpu":
            log.warning("Cannot parse the cpu line of '/proc/stat'")
            return 0
        try:
            user, nice, system, idle = (int(v) for v in fields[1:5])
        except ValueError:
            log.warning("Cannot parse the cpu line of '/proc/stat'")
            return 0
        return self.update(user, nice, system, idle, num_cpus)


class StatusDisplay:
    """Renders the fuzzing statistics screen to a terminal stream."""

    def __init__(
        self,
        stream: IO[str] | None = None,
        prog_name: str = PROG_NAME,
        prog_version: str = PROG_VERSION,
    ) -> None:
        self.stream = stream if stream is not None else sys.stderr
        self.prog_name = prog_name
        self.prog_version = prog_version
        self.cpu = CpuUsage()
        self._prev_exec_cnt = 0
        self._num_cpu = 0
        self._lock = threading.Lock()

    def _write(self, text: str) -> None:
        with self._lock:
            self.stream.write(text)
            self.stream.flush()

    def _mode_line(self, config: FuzzConfig) -> str:
        state = config.feedback.state
        if state is FuzzState.STATIC:
            return f"\n        Mode : {_bold('Static')}\n"
        if state is FuzzState.DYNAMIC_DRY_RUN:
            progress = f" [{config.io.tested_file_cnt}/{config.io.file_cnt}]\n"
            if config.cfg.switching_to_fdm:
                return (
                    f"\n  Mode [2/3] : {_bold('Switching to the Feedback Driven Mode')}"
                    + progress
                )
            return f"\n  Mode [1/3] : {_bold('Feedback Driven Dry Run')}" + progress
        if state is FuzzState.DYNAMIC_MAIN:
            return f"\n  Mode [3/3] : {_bold('Feedback Driven Mode')}\n"
        if state is FuzzState.DYNAMIC_MINIMIZE:
            return f"\n  Mode [3/3] : {_bold('Corpus Minimization')}\n"
        return f"\n        Mode : {_bold('Unknown')}\n"

    def _coverage(self, config: FuzzConfig) -> str:
        method = config.feedback.dyn_file_method
        cnts = config.feedback.hw_cnts
        parts = []
        if method == DynFileMethod.NONE:
            parts.append(" [none]")
        if method & DynFileMethod.INSTR_COUNT:
            parts.append(f" hwi: {_bold(cnts.cpu_instr_cnt)}")
        if method & DynFileMethod.BRANCH_COUNT:
            parts.append(f" hwb: {_bold(cnts.cpu_branch_cnt)}")
        if method & DynFileMethod.BTS_EDGE:
            parts.append(f" bts: {_bold(cnts.bb_cnt)}")
        if method & DynFileMethod.IPT_BLOCK:
            parts.append(f" ipt: {_bold(cnts.bb_cnt)}")
        if method & DynFileMethod.SOFT:
            guard_nb = config.feedback.guard_nb
            edge = cnts.soft_cnt_edge
            pct = (edge * 100) // guard_nb if guard_nb else 0
            parts.append(f" edge: {_bold(edge)}/{guard_nb} [{pct}%]")
            parts.append(f" pc: {_bold(cnts.soft_cnt_pc)}")
            parts.append(f" cmp: {_bold(cnts.soft_cnt_cmp)}")
        return "".join(parts)

    def render(self, config: FuzzConfig, now: float) -> str:
        """Build the status screen for the given time (seconds since the epoch)."""
        curr_sec = int(now)
        elapsed_sec = curr_sec - config.timing.time_start
        curr_usecs = int(now * 1_000_000)
        elapsed_usecs = curr_usecs - config.display.last_display_usecs
        config.display.last_display_usecs = curr_usecs

        last_cov = format_duration(curr_sec - config.timing.last_cov_update)
        if config.timing.run_end_time:
            time_str = format_duration(config.timing.run_end_time - curr_sec)
        else:
            time_str = format_duration(elapsed_sec)

        mutations_max = config.mutate.mutations_max
        curr_exec_cnt = config.cnts.mutations_cnt
        # Threads bump the counter before checking the limit, so it can overshoot.
        if mutations_max > 0 and curr_exec_cnt > mutations_max:
            curr_exec_cnt = mutations_max
        exe_progress = (curr_exec_cnt * 100) // mutations_max if mutations_max > 0 else 0

        if elapsed_usecs:
            exec_per_sec = max(
                0, ((curr_exec_cnt - self._prev_exec_cnt) * 1_000_000) // elapsed_usecs
            )
        else:
            exec_per_sec = 0
        self._prev_exec_cnt = curr_exec_cnt

        out = [_nav(13, 1) + ESC_CLEAR_ABOVE + _nav(1, 1)]
        out.append(f"------------------------[{ESC_BOLD}{time_str:>31} {ESC_RESET}]----------------------\n")
        out.append(f"  Iterations : {_bold(curr_exec_cnt)}")
        out.append(format_kmg(curr_exec_cnt))
        if mutations_max:
            out.append(f" (out of: {_bold(mutations_max)} [{exe_progress}%])")
        out.append(self._mode_line(config))
        out.append(f"      Target : {_bold(config.display.cmdline_txt)}\n")

        if self._num_cpu == 0:
            self._num_cpu = os.cpu_count() or 0
        if self._num_cpu <= 0:
            self._num_cpu = 1
        num_cpu = self._num_cpu
        cpu_use = self.cpu.sample(num_cpu)
        out.append(
            f"     Threads : {_bold(config.threads.threads_max)}, CPUs: {_bold(num_cpu)}"
            f", CPU%: {_bold(cpu_use)}% [{_bold(cpu_use // num_cpu)}%/CPU]\n"
        )

        tot_exec_per_sec = curr_exec_cnt // elapsed_sec if elapsed_sec else 0
        out.append(
            f"       Speed : {_bold(exec_per_sec)}/sec [avg: {_bold(tot_exec_per_sec)}]\n"
        )

        cnts = config.cnts
        red = ESC_RED if cnts.crashes_cnt > 0 else ""
        out.append(
            f"     Crashes : {ESC_BOLD}{red}{cnts.crashes_cnt}{ESC_RESET}"
            f" [unique: {red}{_bold(cnts.unique_crashes_cnt)}"
            f", blocklist: {_bold(cnts.bl_crashes_cnt)}"
            f", verified: {_bold(cnts.verified_crashes_cnt)}]\n"
        )
        out.append(
            f"    Timeouts : {_bold(cnts.timeouted_cnt)} [{config.timing.tm_out} sec]\n"
        )
        out.append(
            f" Corpus Size : {_bold(config.io.dynfileq_cnt)}, max: "
            f"{_bold(config.mutate.max_input_sz)} bytes, init: "
            f"{_bold(config.io.file_cnt)} files\n"
        )
        out.append(f"  Cov Update : {_bold(last_cov)} ago\n{ESC_RESET}")
        out.append("    Coverage :")
        out.append(self._coverage(config))
        out.append(
            f"\n---------------------------------- [ {_bold('LOGS')} ] ------------------/ "
            f"{ESC_BOLD}{self.prog_name} {self.prog_version} {ESC_RESET}/-"
        )
        out.append(_scroll_region(13) + _nav_horiz(1) + _nav_down(500))
        return "".join(out)

    def display(self, config: FuzzConfig) -> None:
        """Draw the status screen, but only when the stream is a terminal."""
        isatty = getattr(self.stream, "isatty", None)
        if isatty is None or not isatty():
            return
        self._write(self.render(config, time.time()))

    def fini(self) -> None:
        """Reset the scroll region and move the cursor to the bottom."""
        self._write(ESC_SCROLL_RESET + _nav_down(500))

    def clear(self) -> None:
        """Clear the whole screen and move the cursor to the bottom."""
        self._write(ESC_CLEAR_ALL)
        self._write(_nav_down(500))

    def init(self) -> None:
        """Clear the screen and restore the terminal when the process exits."""
        atexit.register(self.fini)
        self.clear()