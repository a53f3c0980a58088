"""Tests for tools/terminal_state.py classification and TUI exit helpers."""

from __future__ import annotations

import pytest

from termpilot.tools.terminal_state import (
    attempt_tui_exit,
    classify_terminal_output,
    describe_keys,
    detect_tui_program,
    get_tui_exit_sequence,
)


class TestClassifyIdle:
    def test_dollar_prompt(self) -> None:
        assert classify_terminal_output("ls\nfile.txt\nuser@host:~/project$ ") == "idle"

    def test_zsh_percent_prompt(self) -> None:
        assert classify_terminal_output("done\n~ % ") == "idle"

    def test_root_prompt(self) -> None:
        assert classify_terminal_output("root@box:/# ") == "idle"

    def test_powershell_prompt(self) -> None:
        assert classify_terminal_output("Directory listing\nPS C:\\Users\\dev> ") == "idle"

    def test_cmd_prompt(self) -> None:
        assert classify_terminal_output("C:\\Windows\\system32>") == "idle"

    def test_prompt_beats_server_signature(self) -> None:
        text = "Server listening on localhost:3000\n^C\nuser@host:~$ "
        assert classify_terminal_output(text) == "idle"


class TestClassifyServer:
    def test_localhost_port(self) -> None:
        assert classify_terminal_output("Compiled\n  Local: http://localhost:5173/") == "server"

    def test_listening_on(self) -> None:
        assert classify_terminal_output("INFO: Listening on 0.0.0.0:8000") == "server"

    def test_vite_ready(self) -> None:
        assert classify_terminal_output("VITE v5.0.0  ready in 312 ms") == "server"

    def test_server_signature_outside_window_is_ignored(self) -> None:
        text = "listening on 127.0.0.1:8080\nline a\nline b\nline c\nstill working"
        assert classify_terminal_output(text) == "busy"


class TestClassifyInputNeeded:
    def test_password_prompt(self) -> None:
        assert classify_terminal_output("Password: ") == "input_needed"

    def test_yes_no_prompt(self) -> None:
        assert classify_terminal_output("Proceed with installation? (y/n)") == "input_needed"

    def test_bracketed_yes_no(self) -> None:
        assert classify_terminal_output("Overwrite existing file? [y/N]") == "input_needed"

    def test_are_you_sure(self) -> None:
        assert classify_terminal_output("Are you sure? ") == "input_needed"

    def test_press_enter(self) -> None:
        assert classify_terminal_output("Press Enter to continue") == "input_needed"

    def test_menu_glyphs(self) -> None:
        text = "Select a framework\n● React\n○ Vue\n○ Svelte"
        assert classify_terminal_output(text) == "input_needed"

    def test_selection_cursor(self) -> None:
        text = "? Pick a template\n❯ minimal\n  full"
        assert classify_terminal_output(text) == "input_needed"


class TestClassifyBusy:
    def test_plain_output_is_busy(self) -> None:
        assert classify_terminal_output("Downloading packages (45 of 120)") == "busy"

    def test_empty_is_busy(self) -> None:
        assert classify_terminal_output("") == "busy"

    def test_deterministic(self) -> None:
        text = "Building...\nstep 3/7"
        assert classify_terminal_output(text) == classify_terminal_output(text)


class TestDetectTuiProgram:
    def test_vim_needs_two_signatures(self) -> None:
        assert detect_tui_program("-- INSERT --") is None
        assert detect_tui_program("~\n~\n~\n-- INSERT --") == "vim"

    def test_nano_single_signature(self) -> None:
        assert detect_tui_program("  GNU nano 7.2    notes.txt") == "nano"

    def test_htop(self) -> None:
        assert detect_tui_program("Tasks: 212, 1 running\n  PID USER      PR  NI") == "htop"

    def test_less_end_marker(self) -> None:
        assert detect_tui_program("some text\nlines 1-20\n(END)") == "less"

    def test_ranger(self) -> None:
        assert detect_tui_program("ranger 1.9.3") == "file-manager"

    def test_plain_shell(self) -> None:
        assert detect_tui_program("user@host:~$ ls\nREADME.md") is None


class TestExitSequences:
    def test_vim_sequence(self) -> None:
        steps = get_tui_exit_sequence("vim")
        assert steps[0].keys == "\x1b:q!\r"
        assert len(steps) == 3

    def test_pagers_share_q(self) -> None:
        for name in ("less", "man", "htop"):
            assert [s.keys for s in get_tui_exit_sequence(name)] == ["q"]

    def test_unknown_uses_generic(self) -> None:
        steps = get_tui_exit_sequence("mystery")
        assert steps[0].keys == "\x03"
        assert steps[-1].keys == "q"

    def test_returned_list_is_a_copy(self) -> None:
        get_tui_exit_sequence("vim").clear()
        assert get_tui_exit_sequence("vim")


class TestAttemptTuiExit:
    @pytest.mark.asyncio
    async def test_stops_at_first_success(self) -> None:
        written: list[str] = []
        screens = iter(["~\n~\n~\n-- INSERT --", "user@host:~$ "])

        async def no_sleep(_: float) -> None:
            return None

        result = await attempt_tui_exit(
            "vim",
            write=written.append,
            read=lambda n: next(screens),
            sleep=no_sleep,
        )
        assert result.exited is True
        assert result.attempts == ["Esc + :q!", "Esc Esc + :q!"]
        assert written == ["\x1b:q!\r", "\x1b\x1b:q!\r"]

    @pytest.mark.asyncio
    async def test_gives_up_after_sequence(self) -> None:
        async def read(n: int) -> str:
            return "  GNU nano 7.2\n^G Help  ^X Exit"

        async def write(keys: str) -> None:
            return None

        async def no_sleep(_: float) -> None:
            return None

        result = await attempt_tui_exit("nano", write=write, read=read, sleep=no_sleep)
        assert result.exited is False
        assert len(result.attempts) == 2


class TestDescribeKeys:
    def test_named_key(self) -> None:
        assert describe_keys("\x03") == "Pressed Ctrl+C"

    def test_arrows_with_enter(self) -> None:
        assert describe_keys("\x1b[B\x1b[B\r") == "Down, Down + Enter"

    def test_typed_text(self) -> None:
        assert describe_keys("ls\r") == 'Typed "ls" + Enter'

    def test_long_text(self) -> None:
        assert describe_keys("x" * 31) == "Typed 31 characters"

    def test_mixed_control(self) -> None:
        assert describe_keys("\x1b\x03") == "Sent 2 keystrokes"
