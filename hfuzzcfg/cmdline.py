"""Command-line parsing and verification of a fuzzing run configuration."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from typing import Iterator, Sequence

from hfuzzcfg.config import (
    CLONE_NEWIPC,
    CLONE_NEWNET,
    CLONE_NEWPID,
    CLONE_NEWUSER,
    FILE_PLACEHOLDER,
    INPUT_MAX_SIZE,
    NETDRIVER_SIG,
    PERSISTENT_SIG,
    REPORT_FILE,
    THREAD_MAX,
    ConfigError,
    DynFileMethod,
    FuzzConfig,
    TriState,
    _is_number,
    _strtoul,
    parse_tristate,
    parse_true_false,
)
from hfuzzcfg.display import PROG_NAME, create_target_str

log = logging.getLogger(__name__)

_SHORT_OPTS = "-?hQvVsuUPxf:i:o:dqe:W:r:c:F:t:R:n:N:l:p:g:E:w:B:zMTS"
_NONOPT = 1
_LOGFILE_HANDLER = "hfuzzcfg-logfile"


class UsageRequested(Exception):
    """Raised when the user asked for the help text."""


class _UsageError(ConfigError):
    """A command-line error after which the help text should be shown."""


@dataclass(frozen=True)
class Option:
    """A long command-line option, with its short letter or numeric code."""

    name: str
    has_arg: bool
    key: str | int
    descr: str

    def help_lines(self) -> list[str]:
        value = "VALUE" if self.has_arg else ""
        if isinstance(self.key, str):
            head = f" --{self.name}|-{self.key} {value}"
        else:
            head = f" --{self.name} {value}"
        return [head, f"\t{self.descr}"]


OPTIONS: tuple[Option, ...] = (
    Option("help", False, "h", "Help plz.."),
    Option("input", True, "i", "Path to a directory containing initial file corpus"),
    Option("output", True, "o", "Output data (new dynamic coverage corpus, or the minimized coverage corpus) is written to this directory (default: input directory is re-used)"),
    Option("persistent", False, "P", "Enable persistent fuzzing (use hfuzz_cc/hfuzz-clang to compile code). This will be auto-detected!!!"),
    Option("instrument", False, "z", "*DEFAULT-MODE-BY-DEFAULT* Enable compile-time instrumentation (use hfuzz_cc/hfuzz-clang to compile code)"),
    Option("minimize", False, "M", "Minimize the input corpus. It will most likely delete some corpus files (from the --input directory) if no --output is used!"),
    Option("noinst", False, "x", "Static mode only, disable any instrumentation (hw/sw) feedback"),
    Option("keep_output", False, "Q", "Don't close children's stdin, stdout, stderr; can be noisy"),
    Option("timeout", True, "t", "Timeout in seconds (default: 1 (second))"),
    Option("threads", True, "n", "Number of concurrent fuzzing threads (default: number of CPUs / 2)"),
    Option("stdin_input", False, "s", "Provide fuzzing input on STDIN, instead of " + FILE_PLACEHOLDER),
    Option("mutations_per_run", True, "r", "Maximal number of mutations per one run (default: 6)"),
    Option("logfile", True, "l", "Log file"),
    Option("verbose", False, "v", "Disable ANSI console; use simple log output"),
    Option("verifier", False, "V", "Enable crashes verifier"),
    Option("debug", False, "d", "Show debug messages (level >= 4)"),
    Option("quiet", False, "q", "Show only warnings and more serious messages (level <= 1)"),
    Option("extension", True, "e", "Input file extension (e.g. 'swf'), (default: 'fuzz')"),
    Option("workspace", True, "W", "Workspace directory to save crashes & runtime files (default: '.')"),
    Option("crashdir", True, 0x600, "Directory where crashes are saved to (default: workspace directory)"),
    Option("covdir_all", True, "o", "** DEPRECATED ** use --output"),
    Option("covdir_new", True, 0x602, "New coverage (beyond the dry-run fuzzing phase) is written to this separate directory"),
    Option("dict", True, "w", "Dictionary file. Format:http://llvm.org/docs/LibFuzzer.html#dictionaries"),
    Option("stackhash_bl", True, "B", "Stackhashes blocklist file (one entry per line)"),
    Option("mutate_cmd", True, "c", "External command producing fuzz files (instead of internal mutators)"),
    Option("pprocess_cmd", True, 0x111, "External command postprocessing files produced by internal mutators"),
    Option("ffmutate_cmd", True, 0x110, "External command mutating files which have effective coverage feedback"),
    Option("run_time", True, 0x109, "Number of seconds this fuzzing session will last (default: 0 [no limit])"),
    Option("iterations", True, "N", "Number of fuzzing iterations (default: 0 [no limit])"),
    Option("rlimit_as", True, 0x100, "Per process RLIMIT_AS in MiB (default: 0 [default limit])"),
    Option("rlimit_rss", True, 0x101, "Per process RLIMIT_RSS in MiB (default: 0 [default limit]). It will also set *SAN's soft_rss_limit_mb"),
    Option("rlimit_data", True, 0x102, "Per process RLIMIT_DATA in MiB (default: 0 [default limit])"),
    Option("rlimit_core", True, 0x103, "Per process RLIMIT_CORE in MiB (default: 0 [no cores are produced])"),
    Option("rlimit_stack", True, 0x104, "Per process RLIMIT_STACK in MiB (default: 0 [default limit])"),
    Option("report", True, "R", f"Write report to this file (default: '<workdir>/{REPORT_FILE}')"),
    Option("max_file_size", True, "F", "Maximal size of files processed by the fuzzer in bytes (default: 1048576 = 1MB)"),
    Option("clear_env", False, 0x108, "Clear all environment variables before executing the binary"),
    Option("env", True, "E", "Pass this environment variable, can be used multiple times"),
    Option("save_all", False, "u", "Save all test-cases (not only the unique ones) by appending the current time-stamp to the filenames"),
    Option("save_smaller", False, "U", "Save smaller test-cases, renaming first filename with .orig suffix"),
    Option("tmout_sigvtalrm", False, "T", "Treat time-outs as crashes - use SIGVTALRM to kill timeouting processes (default: use SIGKILL)"),
    Option("sanitizers", False, "S", "** DEPRECATED ** Enable sanitizers settings (default: false)"),
    Option("sanitizers_del_report", True, 0x10F, "Delete sanitizer report after use (default: false)"),
    Option("monitor_sigabrt", True, 0x105, "** DEPRECATED ** SIGABRT is always monitored"),
    Option("no_fb_timeout", True, 0x106, "Skip feedback if the process has timeouted (default: false)"),
    Option("exit_upon_crash", False, 0x107, "Exit upon seeing the first crash"),
    Option("exit_code_upon_crash", True, 0x113, "Exit code to use upon seeing the first crash"),
    Option("socket_fuzzer", False, 0x10B, "Instrument external fuzzer via socket"),
    Option("netdriver", False, 0x10C, "Use netdriver (libhfnetdriver/). In most cases it will be autodetected through a binary signature"),
    Option("only_printable", False, 0x10D, "Only generate printable inputs"),
    Option("export_feedback", False, 0x10E, "Export the coverage feedback structure as ./hfuzz-feedback"),
    Option("const_feedback", True, 0x112, "Use constant integer/string values from fuzzed programs to mangle input files via a dynamic dictionary (default: true)"),
    Option("pin_thread_cpu", True, 0x114, "Pin a single execution thread to this many consecutive CPUs (default: 0 = no CPU pinning)"),
    Option("linux_symbols_bl", True, 0x504, "Symbols blocklist filter file (one entry per line)"),
    Option("linux_symbols_wl", True, 0x505, "Symbols allowlist filter file (one entry per line)"),
    Option("linux_symbols_al", True, 0x505, "Symbols allowlist filter file (one entry per line)"),
    Option("linux_addr_low_limit", True, 0x500, "Address limit (from si.si_addr) below which crashes are not reported, (default: 0)"),
    Option("linux_keep_aslr", False, 0x501, "Don't disable ASLR randomization, might be useful with MSAN"),
    Option("linux_perf_ignore_above", True, 0x503, "Ignore perf events which report IPs above this address"),
    Option("linux_perf_instr", False, 0x510, "Use PERF_COUNT_HW_INSTRUCTIONS perf"),
    Option("linux_perf_branch", False, 0x511, "Use PERF_COUNT_HW_BRANCH_INSTRUCTIONS perf"),
    Option("linux_perf_bts_edge", False, 0x513, "Use Intel BTS to count unique edges"),
    Option("linux_perf_ipt_block", False, 0x514, "Use Intel Processor Trace to count unique blocks (requires libipt.so)"),
    Option("linux_perf_kernel_only", False, 0x515, "Gather kernel-only coverage with Intel PT and with Intel BTS"),
    Option("linux_ns_net", True, 0x530, "Use Linux NET namespace isolation (yes/no/maybe [default:no])"),
    Option("linux_ns_pid", False, 0x531, "Use Linux PID namespace isolation"),
    Option("linux_ns_ipc", False, 0x532, "Use Linux IPC namespace isolation"),
)


def _short_table(spec: str) -> dict[str, bool]:
    table: dict[str, bool] = {}
    chars = spec.lstrip("-")
    for pos, char in enumerate(chars):
        if char == ":":
            continue
        table[char] = chars[pos + 1 : pos + 2] == ":"
    return table


_SHORT = _short_table(_SHORT_OPTS)


def help_text(prog: str) -> str:
    """Return the usage text listing every option and some examples."""
    lines = [f"Usage: {prog} [options] -- path_to_command [args]", "Options:"]
    for opt in OPTIONS:
        lines.extend(opt.help_lines())
    p, f = PROG_NAME, FILE_PLACEHOLDER
    lines += [
        "\nExamples:",
        " Run the binary over a mutated file chosen from the directory. Disable fuzzing feedback (static mode):",
        f"  {p} -i input_dir -x -- /usr/bin/djpeg {f}",
        " As above, provide input over STDIN:",
        f"  {p} -i input_dir -x -s -- /usr/bin/djpeg",
        " Use compile-time instrumentation (-fsanitize-coverage=trace-pc-guard,...):",
        f"  {p} -i input_dir -- /usr/bin/djpeg {f}",
        " Use persistent mode w/o instrumentation:",
        f"  {p} -i input_dir -P -x -- /usr/bin/djpeg_persistent_mode",
        " Use persistent mode and compile-time (-fsanitize-coverage=trace-pc-guard,...) instrumentation:",
        f"  {p} -i input_dir -P -- /usr/bin/djpeg_persistent_mode",
        " Run the binary with dynamically generate inputs, maximize total no. of instructions:",
        f"  {p} --linux_perf_instr -- /usr/bin/djpeg {f}",
        " As above, maximize total no. of branches:",
        f"  {p} --linux_perf_branch -- /usr/bin/djpeg {f}",
        " As above, maximize unique branches (edges) via Intel BTS:",
        f"  {p} --linux_perf_bts_edge -- /usr/bin/djpeg {f}",
        " As above, maximize unique code blocks via Intel Processor Trace (requires libipt.so):",
        f"  {p} --linux_perf_ipt_block -- /usr/bin/djpeg {f}",
    ]
    return "\n".join(lines)


def has_file_placeholder(args: Sequence[str]) -> bool:
    """Tell whether any argument contains the input file placeholder."""
    return any(FILE_PLACEHOLDER in arg for arg in args)


def check_binary_type(config: FuzzConfig) -> bool:
    """Enable persistent or netdriver mode when the binary carries their signatures."""
    path = config.exe.cmdline[0]
    try:
        with open(path, "rb") as binary:
            data = binary.read()
    except OSError:
        # Not being able to read the binary is not a critical error.
        return True
    if PERSISTENT_SIG in data:
        log.info("Persistent signature found in '%s'. Enabling persistent fuzzing mode", path)
        config.exe.persistent = True
    if NETDRIVER_SIG in data:
        log.info("NetDriver signature found '%s'", path)
        config.exe.net_driver = True
    return True


def _make_dir(path: str, what: str) -> None:
    try:
        os.mkdir(path, 0o700)
    except FileExistsError:
        pass
    except OSError as exc:
        raise ConfigError(f"Couldn't create the {what} directory '{path}': {exc}") from exc


def verify(config: FuzzConfig) -> None:
    """Check the configuration for consistency and create the needed directories."""
    if not check_binary_type(config):
        raise ConfigError("Couldn't test binary for signatures")
    if config.exe.net_driver and config.arch_linux.use_net_ns is TriState.MAYBE:
        log.info("The binary uses netdriver, disabling network namespacing")
        config.arch_linux.use_net_ns = TriState.NO

    if (
        not config.exe.fuzz_stdin
        and not config.exe.persistent
        and not has_file_placeholder(config.exe.cmdline)
    ):
        raise ConfigError(
            f"You must specify '{FILE_PLACEHOLDER}' if the -s (stdin fuzzing) "
            "or --persistent options are not set"
        )

    threads_max = config.threads.threads_max
    if threads_max >= THREAD_MAX:
        raise ConfigError(
            f"Too many fuzzing threads specified {threads_max} (>= _HF_THREAD_MAX ({THREAD_MAX}))"
        )
    if threads_max == 0:
        raise ConfigError(f"Too few fuzzing threads specified: {threads_max}")

    if "/" in config.io.file_extn:
        raise ConfigError(
            f"The file extension contains the '/' character: '{config.io.file_extn}'"
        )

    if config.io.output_dir:
        _make_dir(config.io.output_dir, "output")

    if not config.io.work_dir:
        try:
            config.io.work_dir = os.getcwd()
        except OSError:
            log.warning("getcwd() failed. Using '.'")
            config.io.work_dir = "."
    _make_dir(config.io.work_dir, "workspace")
    if config.io.crash_dir is None:
        config.io.crash_dir = config.io.work_dir
    _make_dir(config.io.crash_dir, "crash")

    if config.mutate.mutations_per_run == 0 and config.cfg.use_verifier:
        log.info("Verifier enabled with mutationsPerRun == 0, activating the dry run mode")

    if config.io.max_file_sz > INPUT_MAX_SIZE:
        raise ConfigError(
            f"Maximum file size '{config.io.max_file_sz}' bigger than the maximum size "
            f"'{INPUT_MAX_SIZE}'"
        )


class _GetOpt:
    """Walks argv the way getopt_long does with a leading '-' in the option string."""

    def __init__(self, argv: Sequence[str]) -> None:
        self.argv = argv
        self.optind = 1

    def __iter__(self) -> Iterator[tuple[str | int, str, str | None]]:
        while self.optind < len(self.argv):
            arg = self.argv[self.optind]
            self.optind += 1
            if arg == "--":
                return
            if arg.startswith("--"):
                yield self._long(arg[2:])
            elif arg.startswith("-") and arg != "-":
                yield from self._short(arg[1:])
            else:
                yield _NONOPT, "", arg

    def _next_arg(self) -> str | None:
        if self.optind < len(self.argv):
            value = self.argv[self.optind]
            self.optind += 1
            return value
        return None

    def _short(self, body: str) -> Iterator[tuple[str | int, str, str | None]]:
        for pos, char in enumerate(body):
            if char not in _SHORT:
                yield "?", char, None
                continue
            if not _SHORT[char]:
                yield char, char, None
                continue
            rest = body[pos + 1 :]
            value = rest if rest else self._next_arg()
            if value is None:
                yield "?", char, None
            else:
                yield char, char, value
            return

    def _long(self, body: str) -> tuple[str | int, str, str | None]:
        name, sep, value = body.partition("=")
        exact = [opt for opt in OPTIONS if opt.name == name]
        if exact:
            opt = exact[0]
        else:
            matches = [opt for opt in OPTIONS if opt.name.startswith(name)]
            if not matches:
                return "?", name, None
            opt = matches[0]
            if any(m.has_arg != opt.has_arg or m.key != opt.key for m in matches[1:]):
                return "?", name, None
        if not opt.has_arg:
            if sep:
                return "?", opt.name, None
            return opt.key, opt.name, None
        if not sep:
            next_value = self._next_arg()
            if next_value is None:
                return "?", opt.name, None
            value = next_value
        return opt.key, opt.name, value


def _atol(value: str) -> int:
    text = value.lstrip()
    digits = ""
    for pos, char in enumerate(text):
        if char.isdigit() and char.isascii():
            digits += char
        elif pos == 0 and char in "+-":
            digits += char
        else:
            break
    try:
        return int(digits)
    except ValueError:
        return 0


def _strtoul10(value: str) -> int:
    number = _atol(value)
    return number & ((1 << 64) - 1)


def _init_logging(logfile: str | None, level: int) -> None:
    logger = logging.getLogger("hfuzzcfg")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if handler.get_name() == _LOGFILE_HANDLER:
            logger.removeHandler(handler)
            handler.close()
    if logfile:
        try:
            handler = logging.FileHandler(logfile)
        except OSError as exc:
            raise ConfigError(f"Couldn't open logfile '{logfile}': {exc}") from exc
        handler.set_name(_LOGFILE_HANDLER)
        logger.addHandler(handler)


def parse_args(argv: Sequence[str] | None = None) -> FuzzConfig:
    """Build and verify a configuration from command-line arguments (argv[0] is the program)."""
    argv = list(sys.argv if argv is None else argv)
    config = FuzzConfig()
    level = logging.INFO
    logfile: str | None = None

    parser = _GetOpt(argv)
    for key, optname, value in parser:
        match key:
            case "h":
                raise UsageRequested()
            case "?":
                raise _UsageError(f"Invalid option or missing argument: '{optname}'")
            case "i" | "f":
                config.io.input_dir = value
            case "x":
                config.feedback.dyn_file_method = DynFileMethod.NONE
            case "Q":
                config.exe.nullify_stdio = False
            case "v":
                config.display.use_screen = False
            case "V":
                config.cfg.use_verifier = True
            case "s":
                config.exe.fuzz_stdin = True
            case "u":
                config.io.save_unique = False
            case "U":
                config.io.save_smaller = True
            case "l":
                logfile = value
            case "d":
                level = logging.DEBUG
            case "q":
                level = logging.WARNING
            case "e":
                config.io.file_extn = value
            case "W":
                config.io.work_dir = value
            case 0x600:
                config.io.crash_dir = value
            case "o":
                config.io.output_dir = value
            case 0x602:
                config.io.cov_dir_new = value
            case "r":
                config.mutate.mutations_per_run = _strtoul10(value)
            case "c":
                config.exe.external_command = value
            case "S":
                config.sanitizer.enable = True
            case 0x10F:
                config.sanitizer.del_report = parse_true_false(optname, value)
            case 0x10B:
                config.cfg.socket_fuzzer = True
                config.timing.tm_out = 0  # process timeout checks are disabled
            case 0x10C:
                config.exe.net_driver = True
            case 0x10D:
                config.cfg.only_printable = True
            case 0x10E:
                config.io.export_feedback = True
            case 0x112:
                config.feedback.cmp_feedback = parse_true_false(optname, value)
            case "z":
                config.feedback.dyn_file_method |= DynFileMethod.SOFT
            case "M":
                config.cfg.minimize = True
            case "F":
                config.io.max_file_sz = _strtoul(value)
            case "t":
                config.timing.tm_out = _atol(value)
            case "R":
                config.cfg.report_file = value
            case "n":
                if value[:1] == "a":
                    config.threads.threads_max = max(os.cpu_count() or 1, 1)
                else:
                    if not _is_number(value):
                        raise ConfigError(f"'-n {value}' is not a number")
                    config.threads.threads_max = _strtoul(value)
            case 0x109:
                seconds = _atol(value)
                if seconds > 0:
                    config.timing.run_end_time = config.timing.time_start + seconds
            case "N":
                config.mutate.mutations_max = _atol(value)
            case 0x100:
                config.exe.as_limit = _strtoul(value)
            case 0x101:
                config.exe.rss_limit = _strtoul(value)
            case 0x102:
                config.exe.data_limit = _strtoul(value)
            case 0x103:
                config.exe.core_limit = _strtoul(value)
            case 0x104:
                config.exe.stack_limit = _strtoul(value)
            case 0x111:
                config.exe.post_external_command = value
            case 0x110:
                config.exe.feedback_mutate_command = value
            case 0x106:
                config.feedback.skip_feedback_on_timeout = True
            case 0x107:
                config.cfg.exit_upon_crash = True
            case 0x113:
                config.cfg.exit_code_upon_crash = _strtoul(value)
            case 0x114:
                config.threads.pin_thread_to_cpus = _strtoul(value)
            case 0x108:
                config.exe.clear_env = True
            case "P":
                config.exe.persistent = True
            case "T":
                config.timing.tmout_vtalrm = True
            case "E":
                config.exe.add_env(value)
            case "w":
                config.mutate.dictionary_file = value
            case "B":
                config.feedback.blocklist_file = value
            case 0x500:
                config.arch_linux.ignore_addr = _strtoul(value)
            case 0x501:
                config.arch_linux.disable_randomization = False
            case 0x503:
                config.arch_linux.dynamic_cut_off_addr = _strtoul(value)
            case 0x504:
                config.arch_linux.syms_bl_file = value
            case 0x505:
                config.arch_linux.syms_wl_file = value
            case 0x510:
                config.feedback.dyn_file_method |= DynFileMethod.INSTR_COUNT
            case 0x511:
                config.feedback.dyn_file_method |= DynFileMethod.BRANCH_COUNT
            case 0x513:
                config.feedback.dyn_file_method |= DynFileMethod.BTS_EDGE
            case 0x514:
                config.feedback.dyn_file_method |= DynFileMethod.IPT_BLOCK
            case 0x515:
                config.arch_linux.kernel_only = True
            case 0x530:
                config.arch_linux.use_net_ns = parse_tristate(optname, value)
                if config.arch_linux.use_net_ns is TriState.YES:
                    config.arch_linux.clone_flags |= CLONE_NEWUSER | CLONE_NEWNET
            case 0x531:
                config.arch_linux.clone_flags |= CLONE_NEWUSER | CLONE_NEWPID
            case 0x532:
                config.arch_linux.clone_flags |= CLONE_NEWUSER | CLONE_NEWIPC
            case _:
                shown = optname or value
                raise _UsageError(f"Unsupported argument: '{shown}'")

    _init_logging(logfile, level)

    config.exe.cmdline = argv[parser.optind :]
    if not config.exe.cmdline:
        raise _UsageError("No fuzz command provided")
    if not os.path.exists(config.exe.cmdline[0]):
        raise ConfigError(
            f"Your fuzzed binary '{config.exe.cmdline[0]}' doesn't seem to exist"
        )
    verify(config)
    config.display.cmdline_txt = create_target_str(config.exe.cmdline)
    return config


def main(argv: Sequence[str] | None = None) -> int:
    """Parse the command line and report the resulting fuzzing target."""
    argv = list(sys.argv if argv is None else argv)
    prog = argv[0] if argv else PROG_NAME
    try:
        config = parse_args(argv)
    except UsageRequested:
        print(help_text(prog))
        return 0
    except _UsageError as exc:
        print(f"{prog}: {exc}", file=sys.stderr)
        print(help_text(prog), file=sys.stderr)
        return 1
    except ConfigError as exc:
        print(f"{prog}: {exc}", file=sys.stderr)
        return 1
    print(f"Target: {config.display.cmdline_txt}")
    return 0