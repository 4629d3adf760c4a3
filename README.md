# hfuzzcfg

Command-line parsing, configuration checking and a terminal status screen
for a feedback-driven fuzzer.

## Installation

    pip install .

With the test dependencies:

    pip install ".[test]"

## Command line

    hfuzzcfg [options] -- path_to_command [args]

The command parses the options, checks the configuration, creates the
workspace, crash and output directories as needed, and prints the
(possibly shortened) target command line as `Target: ...`. It exits with
status 0 on success and 1 on an invalid option or configuration.
`hfuzzcfg --help` (or `-h`) prints every option with its description.

The target binary must exist. Its command line must contain the
`___FILE___` placeholder unless `-s` (input on stdin) or `-P` (persistent
mode) is given. If the binary contains the persistent or netdriver
signature, that mode is turned on automatically.

Examples:

    hfuzzcfg -i input_dir -x -- /usr/bin/djpeg ___FILE___
    hfuzzcfg -i input_dir -x -s -- /usr/bin/djpeg
    hfuzzcfg -i input_dir -P -- /usr/bin/djpeg_persistent_mode

## What it does not do

This package only builds and checks the run configuration and renders the
status screen. It does not run the target, mutate inputs, collect coverage
or record crashes; the counters shown on the status screen are whatever
values the `FuzzConfig` holds.

## Library use

    from hfuzzcfg.cmdline import parse_args
    from hfuzzcfg.display import StatusDisplay

    config = parse_args(["hfuzzcfg", "-s", "--", "/usr/bin/djpeg"])
    print(config.threads.threads_max, config.io.work_dir)
    print(StatusDisplay().render(config, now=config.timing.time_start))

### `hfuzzcfg.config`

- `FuzzConfig` bundles the sections `ThreadsConfig`, `IoConfig`,
  `ExeConfig`, `TimingConfig`, `MutateConfig`, `DisplayConfig`,
  `RunConfig`, `SanitizerConfig`, `FeedbackConfig` (with `HwCounters`),
  `Counters` and `LinuxConfig`, each starting with the fuzzer's defaults.
- `TriState`, `DynFileMethod` and `FuzzState` are the enumerations used by
  those sections.
- `parse_tristate` reads yes/no/maybe option values and returns a
  `TriState`; `parse_true_false` reads boolean option values;
  `parse_rlimit` reads `max`, `def` or a number multiplied by a factor.
  Bad values raise `ConfigError`.
- `default_threads` gives half the online CPUs, at least one.
- `ExeConfig.add_env` adds a `NAME=value` entry or replaces one with the
  same name; it raises `ConfigError` once the fixed maximum is reached.
  `ExeConfig.env_list` returns a copy of the entries.

### `hfuzzcfg.cmdline`

- `parse_args(argv)` returns a verified `FuzzConfig`. It raises
  `UsageRequested` for `--help` and `ConfigError` for bad input.
- `verify`, `check_binary_type` and `has_file_placeholder` are the checks
  it applies; `help_text(prog)` returns the usage text; `OPTIONS` holds
  every `Option`.
- `main(argv=None)` is the `hfuzzcfg` command.

### `hfuzzcfg.display`

- `format_kmg` gives the short `[1.50M]`-style magnitude suffix.
- `format_duration` gives the `N days HH hrs MM mins SS secs` form.
- `create_target_str` shortens long command lines for the status screen.
- `CpuUsage` measures CPU load between samples (`sample` reads
  `/proc/stat`; `update` takes tick counts directly).
- `StatusDisplay` renders the screen (`render`), draws it when the stream
  is a terminal (`display`), and provides `init`, `clear` and `fini` for
  terminal setup and reset.