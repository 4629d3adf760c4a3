import os

import pytest

from hfuzzcfg.cmdline import (
    OPTIONS,
    Option,
    UsageRequested,
    check_binary_type,
    has_file_placeholder,
    help_text,
    main,
    parse_args,
    verify,
)
from hfuzzcfg.config import (
    CLONE_NEWPID,
    CLONE_NEWUSER,
    FILE_PLACEHOLDER,
    INPUT_MAX_SIZE,
    NETDRIVER_SIG,
    PERSISTENT_SIG,
    THREAD_MAX,
    ConfigError,
    DynFileMethod,
    FuzzConfig,
    TriState,
)
from hfuzzcfg.display import create_target_str


@pytest.fixture
def target(tmp_path):
    path = tmp_path / "target"
    path.write_bytes(b"\x7fELF plain binary")
    return str(path)


@pytest.fixture
def workspace(tmp_path):
    return str(tmp_path / "ws")


def run(workspace, *args):
    return parse_args(["honggfuzz", "-W", workspace, *args])


def test_has_file_placeholder():
    assert has_file_placeholder(["bin", "in" + FILE_PLACEHOLDER + ".jpg"])
    assert not has_file_placeholder(["bin", "-v"])


def test_minimal_parse(target, workspace):
    config = run(workspace, "--", target, FILE_PLACEHOLDER)
    assert config.exe.cmdline == [target, FILE_PLACEHOLDER]
    assert config.io.work_dir == workspace
    assert config.io.crash_dir == workspace
    assert os.path.isdir(workspace)
    assert config.display.cmdline_txt == create_target_str([target, FILE_PLACEHOLDER])


def test_missing_placeholder_is_error(target, workspace):
    with pytest.raises(ConfigError):
        run(workspace, "--", target)


def test_stdin_mode_needs_no_placeholder(target, workspace):
    config = run(workspace, "-s", "--", target)
    assert config.exe.fuzz_stdin is True


def test_persistent_signature_detected(tmp_path, workspace):
    binary = tmp_path / "persist"
    binary.write_bytes(b"head" + PERSISTENT_SIG + b"tail")
    config = run(workspace, "--", str(binary))
    assert config.exe.persistent is True


def test_netdriver_disables_maybe_netns(tmp_path, workspace):
    binary = tmp_path / "net"
    binary.write_bytes(NETDRIVER_SIG)
    config = run(workspace, "--linux_ns_net", "maybe", "--", str(binary), FILE_PLACEHOLDER)
    assert config.exe.net_driver is True
    assert config.arch_linux.use_net_ns is TriState.NO


def test_help_requested(target, workspace):
    with pytest.raises(UsageRequested):
        run(workspace, "-h", "--", target)


@pytest.mark.parametrize(
    "args",
    [
        ["-?"],
        ["--bogus"],
        ["stray"],
        ["-p", "x"],
        ["--help=1"],
        ["--cov", "x"],
        ["--monitor_sigabrt", "1"],
    ],
)
def test_bad_options(target, workspace, args):
    with pytest.raises(ConfigError):
        run(workspace, *args, "--", target, FILE_PLACEHOLDER)


def test_no_command(workspace):
    with pytest.raises(ConfigError, match="No fuzz command"):
        run(workspace, "-s")


def test_missing_binary(tmp_path, workspace):
    with pytest.raises(ConfigError, match="doesn't seem to exist"):
        run(workspace, "-s", "--", str(tmp_path / "absent"))


def test_extension_with_slash(target, workspace):
    with pytest.raises(ConfigError, match="extension"):
        run(workspace, "-s", "-e", "a/b", "--", target)


def test_max_file_size_limit(target, workspace):
    with pytest.raises(ConfigError):
        run(workspace, "-s", "-F", str(INPUT_MAX_SIZE + 1), "--", target)


def test_feedback_methods(target, workspace):
    config = run(workspace, "-s", "-x", "--", target)
    assert config.feedback.dyn_file_method == DynFileMethod.NONE
    config = run(workspace, "-s", "--linux_perf_instr", "--", target)
    assert config.feedback.dyn_file_method == DynFileMethod.SOFT | DynFileMethod.INSTR_COUNT


def test_long_forms_and_clusters(target, workspace):
    config = run(workspace, "--thr", "3", "--timeout=5", "-sV", "--", target)
    assert config.threads.threads_max == 3
    assert config.timing.tm_out == 5
    assert config.exe.fuzz_stdin is True
    assert config.cfg.use_verifier is True


def test_numeric_options(target, workspace):
    config = run(
        workspace, "-s", "-N", "100", "-r", "0", "-F", "0x10",
        "--rlimit_as", "0x10", "--run_time", "10", "--", target,
    )
    assert config.mutate.mutations_max == 100
    assert config.mutate.mutations_per_run == 0
    assert config.io.max_file_sz == 16
    assert config.exe.as_limit == 16
    assert config.timing.run_end_time == config.timing.time_start + 10


def test_socket_fuzzer_disables_timeout(target, workspace):
    config = run(workspace, "-s", "--socket_fuzzer", "--", target)
    assert config.cfg.socket_fuzzer is True
    assert config.timing.tm_out == 0


def test_env_replacement(target, workspace):
    config = run(workspace, "-s", "-E", "A=1", "-E", "A=2", "-E", "B=3", "--", target)
    assert config.exe.env_list() == ["A=2", "B=3"]


def test_namespace_flags(target, workspace):
    config = run(workspace, "-s", "--linux_ns_pid", "--", target)
    assert config.arch_linux.clone_flags == CLONE_NEWUSER | CLONE_NEWPID


def test_output_dir_created(tmp_path, target, workspace):
    out = tmp_path / "out"
    config = run(workspace, "-s", "-o", str(out), "--", target)
    assert config.io.output_dir == str(out)
    assert out.is_dir()


def test_help_text_lists_options():
    text = help_text("prog")
    assert text.startswith("Usage: prog [options] -- path_to_command [args]")
    assert " --input|-i VALUE" in text
    assert " --crashdir VALUE" in text
    assert all(f" --{opt.name}" in text for opt in OPTIONS)


def test_option_help_lines():
    opt = Option("noinst", False, "x", "Static mode")
    assert opt.help_lines() == [" --noinst|-x ", "\tStatic mode"]


def test_verify_directly(tmp_path, target):
    config = FuzzConfig()
    config.exe.cmdline = [target]
    config.exe.fuzz_stdin = True
    config.io.work_dir = str(tmp_path / "w")
    verify(config)
    assert config.io.crash_dir == config.io.work_dir
    assert os.path.isdir(config.io.work_dir)


def test_check_binary_type_missing_file(tmp_path):
    config = FuzzConfig()
    config.exe.cmdline = [str(tmp_path / "nothing")]
    assert check_binary_type(config) is True
    assert config.exe.persistent is False