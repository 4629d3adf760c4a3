import io
import re

import pytest

from hfuzzcfg.config import DynFileMethod, FuzzConfig, FuzzState
from hfuzzcfg.display import (
    CpuUsage,
    StatusDisplay,
    create_target_str,
    format_duration,
    format_kmg,
)


class _TtyStream(io.StringIO):
    def isatty(self):
        return True


def _config(**kwargs):
    config = FuzzConfig()
    config.timing.time_start = 1000
    config.timing.last_cov_update = 1000
    config.display.last_display_usecs = 1000 * 1_000_000
    for key, value in kwargs.items():
        setattr(config, key, value)
    return config


@pytest.mark.parametrize("value", [0, 1, 999])
def test_format_kmg_small_values_are_empty(value):
    assert format_kmg(value) == ""


@pytest.mark.parametrize(
    "value,suffix",
    [(1000, "k]"), (2_500_000, "M]"), (3_000_000_000, "G]"), (1_000_000_000_000, "T]")],
)
def test_format_kmg_suffixes(value, suffix):
    result = format_kmg(value)
    assert result.startswith(" [")
    assert result.endswith(suffix)


def test_format_kmg_kilo_value():
    assert format_kmg(1000) == " [1.00k]"


def test_format_duration_negative():
    assert format_duration(-5) == "----"


@pytest.mark.parametrize("seconds", [0, 59, 61, 3600, 86399, 86400, 200000, 987654])
def test_format_duration_round_trip(seconds):
    text = format_duration(seconds)
    match = re.fullmatch(r"(\d+) days (\d\d) hrs (\d\d) mins (\d\d) secs", text)
    assert match
    d, h, m, s = (int(g) for g in match.groups())
    assert h < 24 and m < 60 and s < 60
    assert d * 86400 + h * 3600 + m * 60 + s == seconds


def test_create_target_str_short():
    assert create_target_str(["/bin/prog", "-x", "___FILE___"]) == "/bin/prog -x ___FILE___"


def test_create_target_str_empty():
    assert create_target_str([]) == "[EMPTY]"
    assert create_target_str([""]) == "[EMPTY]"


def test_create_target_str_long_is_shortened():
    args = ["/usr/bin/" + "a" * 40, "b" * 50, "tail_argument_" + "c" * 20]
    full = " ".join(args)
    result = create_target_str(args)
    assert len(result) == 64
    assert result.startswith(full[:32])
    assert result.endswith(full[-27:])
    assert "....." in result


def test_cpu_usage_no_change_is_zero():
    cpu = CpuUsage()
    assert cpu.update(0, 0, 0, 0, 4) == 0


@pytest.mark.parametrize("num_cpus", [1, 2, 8])
def test_cpu_usage_fully_busy(num_cpus):
    cpu = CpuUsage()
    cpu.update(10, 10, 10, 10, num_cpus)
    assert cpu.update(110, 10, 10, 10, num_cpus) == 100 * num_cpus


def test_cpu_usage_idle_is_zero():
    cpu = CpuUsage()
    cpu.update(10, 10, 10, 10, 2)
    assert cpu.update(10, 10, 10, 500, 2) == 0


def test_cpu_usage_sample_in_range():
    cpu = CpuUsage()
    cpu.sample(1)
    assert 0 <= cpu.sample(1) <= 100


def test_render_static_mode_and_target():
    config = _config()
    config.feedback.state = FuzzState.STATIC
    config.display.cmdline_txt = "/bin/target ___FILE___"
    text = StatusDisplay(io.StringIO()).render(config, 1010)
    assert "Static" in text
    assert "/bin/target ___FILE___" in text
    assert text.startswith("\033[13;1H\033[1J\033[1;1H")
    assert text.endswith("\033[13;r\033[1G\033[500B")


@pytest.mark.parametrize(
    "state,switching,label",
    [
        (FuzzState.DYNAMIC_DRY_RUN, False, "Feedback Driven Dry Run"),
        (FuzzState.DYNAMIC_DRY_RUN, True, "Switching to the Feedback Driven Mode"),
        (FuzzState.DYNAMIC_MAIN, False, "Feedback Driven Mode"),
        (FuzzState.DYNAMIC_MINIMIZE, False, "Corpus Minimization"),
        (FuzzState.UNSET, False, "Unknown"),
    ],
)
def test_render_modes(state, switching, label):
    config = _config()
    config.feedback.state = state
    config.cfg.switching_to_fdm = switching
    text = StatusDisplay(io.StringIO()).render(config, 1010)
    assert label in text


def test_render_progress_is_capped():
    config = _config()
    config.mutate.mutations_max = 10
    config.cnts.mutations_cnt = 15
    text = StatusDisplay(io.StringIO()).render(config, 1010)
    assert "[100%]" in text


def test_render_crash_count_red():
    config = _config()
    config.cnts.crashes_cnt = 3
    text = StatusDisplay(io.StringIO()).render(config, 1010)
    assert "\033[31m" in text
    quiet = StatusDisplay(io.StringIO()).render(_config(), 1010)
    assert "\033[31m" not in quiet


def test_render_coverage_none():
    config = _config()
    config.feedback.dyn_file_method = DynFileMethod.NONE
    text = StatusDisplay(io.StringIO()).render(config, 1010)
    assert " [none]" in text
    assert " edge: " not in text


def test_render_soft_coverage_percentage():
    config = _config()
    config.feedback.guard_nb = 200
    config.feedback.hw_cnts.soft_cnt_edge = 100
    text = StatusDisplay(io.StringIO()).render(config, 1010)
    assert "[50%]" in text


def test_render_updates_last_display_and_speed():
    config = _config()
    screen = StatusDisplay(io.StringIO())
    screen.render(config, 1010)
    assert config.display.last_display_usecs == 1010 * 1_000_000
    config.cnts.mutations_cnt = 500
    text = screen.render(config, 1011)
    assert "\033[1m500\033[0m/sec" in text


def test_display_skips_non_tty():
    stream = io.StringIO()
    StatusDisplay(stream).display(_config())
    assert stream.getvalue() == ""


def test_display_writes_to_tty():
    stream = _TtyStream()
    StatusDisplay(stream).display(_config())
    assert "Iterations" in stream.getvalue()


def test_clear_and_fini_sequences():
    stream = io.StringIO()
    screen = StatusDisplay(stream)
    screen.clear()
    assert stream.getvalue() == "\033[2J\033[500B"
    stream.seek(0)
    stream.truncate()
    screen.fini()
    assert stream.getvalue() == "\033[r\033[500B"


def test_init_clears_screen():
    stream = io.StringIO()
    StatusDisplay(stream).init()
    assert stream.getvalue().startswith("\033[2J")