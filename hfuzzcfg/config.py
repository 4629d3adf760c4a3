"""Fuzzer run configuration: defaults, option value parsing and environment handling."""

from __future__ import annotations

import enum
import logging
import os
import re
import time
from dataclasses import dataclass, field

log = logging.getLogger(__name__)

FILE_PLACEHOLDER = "___FILE___"
PERSISTENT_SIG = b"\x01_LIBHFUZZ_PERSISTENT_BINARY_SIGNATURE_\x02\xff"
NETDRIVER_SIG = b"\x01_LIBHFUZZ_NETDRIVER_BINARY_SIGNATURE_\x02\xff"
REPORT_FILE = "HONGGFUZZ.REPORT.TXT"
THREAD_MAX = 1024
INPUT_MAX_SIZE = 1024 * 1024 * 1024
MAX_ENV = 128
ENV_VALUE_MAX = 4096

CLONE_NEWIPC = 0x08000000
CLONE_NEWUSER = 0x10000000
CLONE_NEWPID = 0x20000000
CLONE_NEWNET = 0x40000000

_ULONG_MASK = (1 << 64) - 1

_FALSE_WORDS = frozenset({"0", "false", "n", "no"})
_TRUE_WORDS = frozenset({"1", "true", "y", "yes"})
_MAYBE_WORDS = frozenset({"-1", "maybe", "m", "if_supported"})

_C_INT_RE = re.compile(r"\s*([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")


class ConfigError(Exception):
    """Raised when a configuration value is invalid or cannot be applied."""


class TriState(enum.Enum):
    NO = 0
    YES = 1
    MAYBE = 2


class DynFileMethod(enum.IntFlag):
    NONE = 0x0
    INSTR_COUNT = 0x1
    BRANCH_COUNT = 0x2
    BTS_EDGE = 0x10
    IPT_BLOCK = 0x20
    SOFT = 0x40


class FuzzState(enum.Enum):
    UNSET = 0
    STATIC = 1
    DYNAMIC_DRY_RUN = 2
    DYNAMIC_MAIN = 3
    DYNAMIC_MINIMIZE = 4


def _strtoul(value: str) -> int:
    """Parse the leading integer of value the way strtoul(value, NULL, 0) does."""
    match = _C_INT_RE.match(value)
    if not match:
        return 0
    sign, digits = match.groups()
    if digits[:2].lower() == "0x":
        number = int(digits[2:], 16)
    elif len(digits) > 1 and digits.startswith("0"):
        number = int(digits[1:], 8)
    else:
        number = int(digits, 10)
    if sign == "-":
        number = -number
    return number & _ULONG_MASK


def _is_number(value: str) -> bool:
    match = _C_INT_RE.match(value)
    return bool(match) and match.end() == len(value) and not value[:1].isspace()


def _check_option_value(optname: str, value: str | None, choices: str) -> str:
    # A value starting with '-' most likely belongs to the next option.
    if value is None or value.startswith("-"):
        raise ConfigError(f"Option '--{optname}' needs an argument ({choices})")
    return value


def parse_tristate(optname: str, value: str | None) -> TriState:
    """Parse a yes/no/maybe option value."""
    if value is None or value.startswith("-") and value != "-1":
        _check_option_value(optname, value, "true|false|maybe")
    if value.startswith("-"):
        # The source rejects any leading '-', including "-1".
        raise ConfigError(f"Option '--{optname}' needs an argument (true|false|maybe)")
    word = value.lower()
    if word in _FALSE_WORDS:
        return TriState.NO
    if word in _TRUE_WORDS:
        return TriState.YES
    if word in _MAYBE_WORDS:
        return TriState.MAYBE
    raise ConfigError(
        f"Unknown value for option --{optname}={value}. Use true, false or maybe"
    )


def parse_true_false(optname: str, value: str | None) -> bool:
    """Parse a boolean option value."""
    value = _check_option_value(optname, value, "true|false")
    word = value.lower()
    if word in _FALSE_WORDS:
        return False
    if word in _TRUE_WORDS:
        return True
    raise ConfigError(f"Unknown value for option --{optname}={value}. Use true or false")


def parse_rlimit(resource_id: int, value: str, mul: int) -> int:
    """Parse a resource limit: 'max', 'def' or a number multiplied by mul."""
    import resource

    try:
        soft, hard = resource.getrlimit(resource_id)
    except (ValueError, OSError) as exc:
        raise ConfigError(f"getrlimit({resource_id}): {exc}") from exc
    word = value.lower()
    if word == "max":
        return hard
    if word == "def":
        return soft
    if not _is_number(value):
        raise ConfigError(
            f"RLIMIT {resource_id} needs a numeric or 'max'/'def' value ('{value}' provided)"
        )
    return (_strtoul(value) * mul) & _ULONG_MASK


def default_threads() -> int:
    """Default number of fuzzing threads: half of the online CPUs, at least one."""
    ncpus = os.cpu_count() or 1
    return 1 if ncpus <= 1 else ncpus // 2


def _now_usecs() -> int:
    return time.time_ns() // 1000


@dataclass
class ThreadsConfig:
    threads_finished: int = 0
    threads_max: int = field(default_factory=default_threads)
    threads_active_cnt: int = 0
    pin_thread_to_cpus: int = 0
    main_pid: int = field(default_factory=os.getpid)


@dataclass
class IoConfig:
    input_dir: str | None = None
    output_dir: str | None = None
    file_cnt: int = 0
    tested_file_cnt: int = 0
    max_file_sz: int = 0
    new_units_added: int = 0
    file_extn: str = "fuzz"
    work_dir: str = ""
    crash_dir: str | None = None
    cov_dir_new: str | None = None
    save_unique: bool = True
    save_smaller: bool = False
    dynfileq_max_sz: int = 0
    dynfileq_cnt: int = 0
    export_feedback: bool = False


@dataclass
class ExeConfig:
    cmdline: list[str] = field(default_factory=list)
    nullify_stdio: bool = True
    fuzz_stdin: bool = False
    external_command: str | None = None
    post_external_command: str | None = None
    feedback_mutate_command: str | None = None
    persistent: bool = False
    net_driver: bool = False
    as_limit: int = 0
    rss_limit: int = 0
    data_limit: int = 0
    core_limit: int = 0
    stack_limit: int = 0
    clear_env: bool = False
    env: list[str] = field(default_factory=list)

    @property
    def argc(self) -> int:
        return len(self.cmdline)

    def add_env(self, env: str) -> None:
        """Add a NAME=value entry, replacing any entry with the same NAME= prefix."""
        eq = env.find("=")
        prefix = env if eq < 0 else env[: eq + 1]
        stored = env[: ENV_VALUE_MAX - 1]
        for pos, existing in enumerate(self.env):
            if existing.startswith(prefix):
                log.warning("Replacing envar '%s' with '%s'", existing, env)
                self.env[pos] = stored
                return
        if len(self.env) >= MAX_ENV:
            raise ConfigError(f"No more space for new envars (max.{MAX_ENV})")
        log.debug("Adding envar '%s' at pos: %d", env, len(self.env))
        self.env.append(stored)

    def env_list(self) -> list[str]:
        """Return a copy of the configured environment entries."""
        return list(self.env)


@dataclass
class TimingConfig:
    time_start: int = field(default_factory=lambda: int(time.time()))
    run_end_time: int = 0
    tm_out: int = 1
    last_cov_update: int = field(default_factory=lambda: int(time.time()))
    time_of_longest_unit_usecs: int = 0
    tmout_vtalrm: bool = False


@dataclass
class MutateConfig:
    mutations_max: int = 0
    dictionary: list[bytes] = field(default_factory=list)
    dictionary_file: str | None = None
    mutations_per_run: int = 5
    max_input_sz: int = 0


@dataclass
class DisplayConfig:
    use_screen: bool = True
    last_display_usecs: int = field(default_factory=_now_usecs)
    cmdline_txt: str = ""


@dataclass
class RunConfig:
    use_verifier: bool = False
    exit_upon_crash: bool = False
    exit_code_upon_crash: int = 0
    report_file: str | None = None
    dyn_file_iter_expire: int = 0
    only_printable: bool = False
    minimize: bool = False
    switching_to_fdm: bool = False
    socket_fuzzer: bool = False


@dataclass
class SanitizerConfig:
    enable: bool = False
    del_report: bool = False


@dataclass
class HwCounters:
    cpu_instr_cnt: int = 0
    cpu_branch_cnt: int = 0
    bb_cnt: int = 0
    new_bb_cnt: int = 0
    soft_cnt_pc: int = 0
    soft_cnt_edge: int = 0
    soft_cnt_cmp: int = 0


@dataclass
class FeedbackConfig:
    cmp_feedback: bool = True
    blocklist_file: str | None = None
    blocklist: list[int] = field(default_factory=list)
    skip_feedback_on_timeout: bool = False
    dyn_file_method: DynFileMethod = DynFileMethod.SOFT
    state: FuzzState = FuzzState.UNSET
    hw_cnts: HwCounters = field(default_factory=HwCounters)
    guard_nb: int = 0


@dataclass
class Counters:
    mutations_cnt: int = 0
    crashes_cnt: int = 0
    unique_crashes_cnt: int = 0
    verified_crashes_cnt: int = 0
    bl_crashes_cnt: int = 0
    timeouted_cnt: int = 0


@dataclass
class LinuxConfig:
    dynamic_cut_off_addr: int = _ULONG_MASK
    disable_randomization: bool = True
    ignore_addr: int = 0
    syms_bl_file: str | None = None
    syms_wl_file: str | None = None
    clone_flags: int = 0
    use_net_ns: TriState = TriState.NO
    kernel_only: bool = False
    use_clone: bool = True


@dataclass
class FuzzConfig:
    threads: ThreadsConfig = field(default_factory=ThreadsConfig)
    io: IoConfig = field(default_factory=IoConfig)
    exe: ExeConfig = field(default_factory=ExeConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    mutate: MutateConfig = field(default_factory=MutateConfig)
    display: DisplayConfig = field(default_factory=DisplayConfig)
    cfg: RunConfig = field(default_factory=RunConfig)
    sanitizer: SanitizerConfig = field(default_factory=SanitizerConfig)
    feedback: FeedbackConfig = field(default_factory=FeedbackConfig)
    cnts: Counters = field(default_factory=Counters)
    arch_linux: LinuxConfig = field(default_factory=LinuxConfig)