from __future__ import annotations

from pathlib import Path
import shutil

import pytest

from suggestmerge.models import SuggestionEdit
from suggestmerge.observability import configure_logging
from suggestmerge.patching import PatchApplyError, apply_patch
from suggestmerge.shell import CommandResult
from suggestmerge.suggestions import render_patch


PATCH = "--- a/pkg/mod.py\n+++ b/pkg/mod.py\n@@ -1,3 +1,3 @@\n a\n-b\n+B\n c\n"


class FakeGit:
    def __init__(
        self, *, returncode: int = 0, result: str | None = None, stderr: str = ""
    ) -> None:
        self.returncode = returncode
        self.result = result
        self.stderr = stderr
        self.commands: list[list[str]] = []
        self.seen_original: str | None = None
        self.patch_input: str | None = None

    def run(self, argv: list[str], **kwargs: object) -> str:
        _ = kwargs
        self.commands.append(argv)
        return ""

    def run_command(
        self, argv: list[str], *, input_text: str | None = None, **kwargs: object
    ) -> CommandResult:
        _ = kwargs
        self.commands.append(argv)
        self.patch_input = input_text
        target = Path(argv[2]) / "pkg" / "mod.py"
        self.seen_original = target.read_bytes().decode("utf-8")
        if self.returncode == 0:
            if self.result is None:
                target.unlink()
            else:
                target.write_bytes(self.result.encode("utf-8"))
        return CommandResult(tuple(argv), self.returncode, "", self.stderr)


@pytest.fixture
def fake_git(monkeypatch: pytest.MonkeyPatch) -> FakeGit:
    git = FakeGit(result="a\nB\nc\n")
    monkeypatch.setattr("suggestmerge.patching.run", git.run)
    monkeypatch.setattr("suggestmerge.patching.run_command", git.run_command)
    return git


def test_apply_patch_runs_git_apply_in_scratch_repo(fake_git: FakeGit) -> None:
    patched = apply_patch("a\r\nb\r\nc\r\n", PATCH, file_path="pkg/mod.py")

    assert patched == "a\nB\nc\n"
    assert fake_git.seen_original == "a\r\nb\r\nc\r\n"
    assert fake_git.patch_input == PATCH
    init_cmd, apply_cmd = fake_git.commands
    assert init_cmd[:3] == ["git", "init", "--quiet"]
    assert apply_cmd[0:2] == ["git", "-C"]
    assert apply_cmd[2] == init_cmd[3]
    assert apply_cmd[3:] == ["apply", "--recount", "--unidiff-zero", "--whitespace=nowarn", "-"]
    assert not Path(init_cmd[3]).exists()


def test_apply_patch_rejection_raises(
    fake_git: FakeGit, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    fake_git.returncode = 1
    fake_git.stderr = "error: patch failed: pkg/mod.py:1\n"

    with pytest.raises(PatchApplyError, match="patch does not apply to pkg/mod.py"):
        apply_patch("x\n", PATCH, file_path="pkg/mod.py")

    stderr = capsys.readouterr().err
    assert "event=patch_rejected exit_code=1 file_path=pkg/mod.py" in stderr


def test_apply_patch_refuses_deletions(fake_git: FakeGit) -> None:
    fake_git.result = None

    with pytest.raises(PatchApplyError, match="deletions are not supported"):
        apply_patch("a\nb\nc\n", PATCH, file_path="pkg/mod.py")


@pytest.mark.parametrize("file_path", ["/etc/passwd", "../outside.py", "a/../../b.py", ""])
def test_apply_patch_rejects_unsafe_paths(fake_git: FakeGit, file_path: str) -> None:
    with pytest.raises(PatchApplyError, match="unsafe path"):
        apply_patch("x\n", PATCH, file_path=file_path)
    assert fake_git.commands == []


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@requires_git
def test_apply_patch_with_real_git() -> None:
    assert apply_patch("a\nb\nc\n", PATCH, file_path="pkg/mod.py") == "a\nB\nc\n"


@requires_git
def test_apply_patch_with_real_git_tolerates_offset_and_bad_counts() -> None:
    original = "header\nmore\na\nb\nc\n"
    patch = "--- a/pkg/mod.py\n+++ b/pkg/mod.py\n@@ -2,9 +2,9 @@\n a\n-b\n+B\n c\n"

    assert apply_patch(original, patch, file_path="pkg/mod.py") == "header\nmore\na\nB\nc\n"


@requires_git
def test_apply_patch_with_real_git_rejects_mismatched_context() -> None:
    with pytest.raises(PatchApplyError):
        apply_patch("a\nz\nc\n", PATCH, file_path="pkg/mod.py")


def test_apply_patch_restores_missing_final_newline(fake_git: FakeGit) -> None:
    fake_git.result = "a\nB\nc\n"

    patched = apply_patch("a\nb\nc", PATCH, file_path="pkg/mod.py")

    assert fake_git.seen_original == "a\nb\nc\n"
    assert patched == "a\nB\nc"


@requires_git
def test_apply_patch_with_real_git_on_file_without_final_newline() -> None:
    patch = "--- a/x.py\n+++ b/x.py\n@@ -1,2 +1,2 @@\n keep\n-one\n+uno\n"

    assert apply_patch("keep\none", patch, file_path="x.py") == "keep\nuno"


@requires_git
def test_apply_patch_with_real_git_locates_context_free_hunks() -> None:
    edit = SuggestionEdit(file_path="src/index.ts", diff_body="- old line\n+ new line")

    patched = apply_patch("first\n old line\nlast\n", render_patch(edit), file_path="src/index.ts")

    assert patched == "first\n new line\nlast\n"


@requires_git
def test_apply_patch_with_real_git_removes_lines_without_deleting_the_file() -> None:
    patch = "--- a/x.py\n+++ b/x.py\n@@ -2 +1,0 @@\n-debug()\n"

    assert apply_patch("run()\ndebug()\nstop()\n", patch, file_path="x.py") == "run()\nstop()\n"
