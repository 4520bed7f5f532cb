from __future__ import annotations

from dataclasses import replace
import shutil

import pytest

from suggestmerge.commit_builder import SuggestionCommitBuilder
from suggestmerge.config import BotIdentity, ReadinessConfig
from suggestmerge.github_gateway import GitHubApiError
from suggestmerge.models import (
    FileContent,
    IssueComment,
    PullRequestContext,
    PullRequestMergeResult,
)
from suggestmerge.observability import configure_logging
from suggestmerge.patching import PatchApplyError
from suggestmerge.pipeline import (
    SuggestionPipeline,
    collect_trusted_batches,
    pull_request_skip_reason,
)
from suggestmerge.policy import RepositoryPolicy


BOT_LOGIN = "gemini-code-assist[bot]"
POLICY = RepositoryPolicy(automatic_pr_processing=True, primary_branch="main")


def _pr(**overrides: object) -> PullRequestContext:
    values: dict[str, object] = {
        "owner": "o",
        "repo_name": "r",
        "number": 3,
        "head_ref": "feature",
        "head_sha": "head-1",
        "head_repo_full_name": "o/r",
        "base_ref": "develop",
        "state": "open",
        "draft": False,
        "merged": False,
        "mergeable": None,
    }
    values.update(overrides)
    return PullRequestContext(**values)  # type: ignore[arg-type]


def _comment(comment_id: int, body: str, *, login: str = BOT_LOGIN) -> IssueComment:
    return IssueComment(comment_id=comment_id, body=body, user_login=login)


def _suggestion(path: str, old: str, new: str) -> str:
    return f"Suggestion:\n```diff\n--- a/{path}\n+++ b/{path}\n-{old}\n+{new}\n```\n"


class FakeGitHub:
    """Simulates GitHub computing mergeability after a push and marking merges."""

    full_name = "o/r"

    def __init__(self, pr: PullRequestContext, comments: list[IssueComment]) -> None:
        self.pr = pr
        self.comments = comments
        self.files = {"a.py": "one\n", "b.py": "two\n"}
        self.events: list[str] = []
        self.merge_branch_calls: list[tuple[str, str]] = []
        self.blob_fail = False
        self.commit_count = 0

    def get_pull_request(self, pr_number: int) -> PullRequestContext:
        assert pr_number == self.pr.number
        self.events.append("get_pull_request")
        return self.pr

    def list_issue_comments(self, issue_number: int) -> list[IssueComment]:
        self.events.append("list_issue_comments")
        return self.comments

    def get_file_content(self, path: str, *, ref: str | None = None) -> FileContent:
        if path not in self.files:
            raise GitHubApiError("missing", method="GET", path=path, status_code=404)
        return FileContent(path=path, sha="x", text=self.files[path])

    def get_commit_tree_sha(self, commit_sha: str) -> str:
        return "tree-0"

    def create_blob(self, content: str) -> str:
        if self.blob_fail:
            raise GitHubApiError("server error", method="POST", path="blobs", status_code=500)
        self.events.append("create_blob")
        return f"blob-{content.strip()}"

    def create_tree(self, *, base_tree_sha: str, blobs_by_path: dict[str, str]) -> str:
        return "tree-1"

    def create_commit(
        self,
        *,
        message: str,
        tree_sha: str,
        parent_shas: tuple[str, ...],
        author_name: str,
        author_email: str,
    ) -> str:
        self.events.append("create_commit")
        self.commit_count += 1
        return f"commit-{self.commit_count}"

    def get_branch_head_sha(self, branch: str) -> str:
        return self.pr.head_sha

    def update_branch_ref(self, branch: str, sha: str, *, force: bool = False) -> None:
        self.events.append("update_branch_ref")
        self.pr = replace(self.pr, head_sha=sha, mergeable=True)

    def merge_pull_request(
        self,
        pr_number: int,
        *,
        merge_method: str = "squash",
    ) -> PullRequestMergeResult:
        self.events.append(f"merge:{merge_method}")
        self.pr = replace(self.pr, merged=True, state="closed")
        return PullRequestMergeResult(merged=True, message="merged", sha="m-1")

    def merge_branches(self, *, base: str, head: str, commit_message: str) -> str | None:
        self.merge_branch_calls.append((base, head))
        return "i-1"


def replacing_patcher(original: str, patch: str, *, file_path: str) -> str:
    body = patch.splitlines()[2:]
    if any("reject" in line for line in body):
        raise PatchApplyError(f"patch does not apply to {file_path}")
    old = next(line[1:] for line in body if line.startswith("-"))
    new = next(line[1:] for line in body if line.startswith("+"))
    return original.replace(old, new)


def _pipeline(github: FakeGitHub, policy: RepositoryPolicy = POLICY) -> SuggestionPipeline:
    bot = BotIdentity()
    return SuggestionPipeline(
        github,
        policy,
        bot=bot,
        readiness=ReadinessConfig(max_attempts=2, interval_seconds=0),
        sleep=lambda _: None,
        builder=SuggestionCommitBuilder(github, bot=bot, patcher=replacing_patcher),
    )


@pytest.mark.parametrize(
    "pr,reason",
    [
        (_pr(), None),
        (_pr(state="closed"), "not_open"),
        (_pr(draft=True), "draft"),
        (_pr(head_repo_full_name="someone/fork"), "cross_repository_head"),
        (_pr(head_repo_full_name=""), "cross_repository_head"),
        (_pr(head_repo_full_name="O/R"), None),
    ],
)
def test_pull_request_skip_reason(pr: PullRequestContext, reason: str | None) -> None:
    assert pull_request_skip_reason(pr) == reason


def test_collect_trusted_batches_keeps_one_batch_per_comment() -> None:
    comments = [
        _comment(1, _suggestion("a.py", "one", "ONE")),
        _comment(2, _suggestion("b.py", "two", "TWO"), login="mallory"),
        _comment(3, "LGTM"),
        _comment(4, _suggestion("b.py", "two", "2"), login="Gemini-Code-Assist[bot]"),
        _comment(5, ""),
    ]

    batches = collect_trusted_batches(comments, POLICY)

    assert [batch.comment_id for batch in batches] == [1, 4]
    assert [edit.file_path for edit in batches[0].edits] == ["a.py"]
    assert batches[1].edits[0].diff_body == "-two\n+2"


def test_run_applies_suggestions_then_merges(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)
    github = FakeGitHub(
        _pr(),
        [
            _comment(1, _suggestion("a.py", "one", "ONE")),
            _comment(2, _suggestion("b.py", "two", "TWO")),
        ],
    )

    outcome = _pipeline(github).run(3)

    assert outcome.status == "merged"
    assert outcome.commit_sha == "commit-2"
    assert github.events.count("create_commit") == 2
    assert github.events.count("update_branch_ref") == 2
    assert github.events.count("merge:squash") == 1
    assert github.events.index("update_branch_ref") < github.events.index("merge:squash")
    assert github.merge_branch_calls == [("main", "develop")]
    stderr = capsys.readouterr().err
    assert "repo_full_name=o/r event=pipeline_finished" in stderr
    assert "status=merged" in stderr


def test_run_skips_ineligible_pull_requests() -> None:
    github = FakeGitHub(_pr(draft=True), [_comment(1, _suggestion("a.py", "one", "ONE"))])

    outcome = _pipeline(github).run(3)

    assert (outcome.status, outcome.detail) == ("skipped", "draft")
    assert github.events == ["get_pull_request"]


def test_run_without_trusted_suggestions_does_nothing() -> None:
    github = FakeGitHub(_pr(), [_comment(1, _suggestion("a.py", "one", "ONE"), login="mallory")])

    outcome = _pipeline(github).run(3)

    assert outcome.status == "no_suggestions"
    assert github.events == ["get_pull_request", "list_issue_comments"]


def test_run_aborts_whole_batch_when_one_suggestion_fails() -> None:
    body = _suggestion("a.py", "one", "ONE") + _suggestion("b.py", "reject", "x")
    github = FakeGitHub(_pr(), [_comment(1, body)])

    outcome = _pipeline(github).run(3)

    assert outcome.status == "batch_aborted"
    assert "b.py" in outcome.detail
    assert "create_blob" not in github.events
    assert "update_branch_ref" not in github.events
    assert not any(event.startswith("merge") for event in github.events)


def test_run_failed_comment_does_not_block_later_comments(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose=True)
    github = FakeGitHub(
        _pr(),
        [
            _comment(1, _suggestion("b.py", "reject", "x")),
            _comment(2, _suggestion("a.py", "one", "ONE")),
        ],
    )

    outcome = _pipeline(github).run(3)

    assert outcome.status == "merged"
    assert outcome.commit_sha == "commit-1"
    assert github.events.count("create_commit") == 1
    assert github.events.count("merge:squash") == 1
    stderr = capsys.readouterr().err
    assert "event=suggestion_batch_aborted comment_id=1" in stderr


def test_run_stops_when_the_branch_moves() -> None:
    github = FakeGitHub(
        _pr(),
        [
            _comment(1, _suggestion("a.py", "one", "ONE")),
            _comment(2, _suggestion("b.py", "two", "TWO")),
        ],
    )
    github.get_branch_head_sha = lambda branch: "pushed-by-author"  # type: ignore[method-assign]

    outcome = _pipeline(github).run(3)

    assert outcome.status == "batch_aborted"
    assert "moved" in outcome.detail
    assert outcome.commit_sha is None
    assert github.events.count("create_commit") == 1
    assert "update_branch_ref" not in github.events
    assert not any(event.startswith("merge") for event in github.events)


def test_run_reports_no_effective_changes() -> None:
    github = FakeGitHub(_pr(), [_comment(1, _suggestion("a.py", "absent", "x"))])

    outcome = _pipeline(github).run(3)

    assert (outcome.status, outcome.detail) == ("no_suggestions", "no_effective_changes")


def test_run_reports_commit_failures() -> None:
    github = FakeGitHub(_pr(), [_comment(1, _suggestion("a.py", "one", "ONE"))])
    github.blob_fail = True

    outcome = _pipeline(github).run(3)

    assert outcome.status == "commit_failed"
    assert "update_branch_ref" not in github.events


def test_run_never_raises(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(verbose=True)

    class BrokenGitHub(FakeGitHub):
        def get_pull_request(self, pr_number: int) -> PullRequestContext:
            raise GitHubApiError("bad credentials", method="GET", path="p", status_code=401)

    outcome = _pipeline(BrokenGitHub(_pr(), [])).run(3)

    assert outcome.status == "failed"
    assert "event=pipeline_failed error=" in capsys.readouterr().err


def test_run_proceeds_to_merge_check_after_readiness_timeout() -> None:
    github = FakeGitHub(_pr(), [_comment(1, _suggestion("a.py", "one", "ONE"))])

    def update_without_mergeability(branch: str, sha: str, *, force: bool = False) -> None:
        github.events.append("update_branch_ref")
        github.pr = replace(github.pr, head_sha=sha, mergeable=None)

    github.update_branch_ref = update_without_mergeability  # type: ignore[method-assign]

    outcome = _pipeline(github).run(3)

    assert outcome.status == "unmergeable"
    assert outcome.commit_sha == "commit-1"
    assert github.events.count("get_pull_request") == 1 + 2 + 1


class SnapshotGitHub(FakeGitHub):
    """Keeps a file snapshot per commit so each comment sees the previous commit."""

    def __init__(
        self, pr: PullRequestContext, comments: list[IssueComment], files: dict[str, str]
    ) -> None:
        super().__init__(pr, comments)
        self.trees: dict[str, dict[str, str]] = {"tree-0": dict(files)}
        self.commit_trees: dict[str, str] = {pr.head_sha: "tree-0"}
        self.blobs: dict[str, str] = {}

    def files_at(self, commit_sha: str) -> dict[str, str]:
        return self.trees[self.commit_trees[commit_sha]]

    def get_file_content(self, path: str, *, ref: str | None = None) -> FileContent:
        files = self.files_at(ref or self.pr.head_sha)
        if path not in files:
            raise GitHubApiError("missing", method="GET", path=path, status_code=404)
        return FileContent(path=path, sha="x", text=files[path])

    def get_commit_tree_sha(self, commit_sha: str) -> str:
        return self.commit_trees[commit_sha]

    def create_blob(self, content: str) -> str:
        self.events.append("create_blob")
        blob_sha = f"blob:{content}"
        self.blobs[blob_sha] = content
        return blob_sha

    def create_tree(self, *, base_tree_sha: str, blobs_by_path: dict[str, str]) -> str:
        tree_sha = f"tree-{len(self.trees)}"
        files = dict(self.trees[base_tree_sha])
        files.update({path: self.blobs[blob] for path, blob in blobs_by_path.items()})
        self.trees[tree_sha] = files
        return tree_sha

    def create_commit(
        self,
        *,
        message: str,
        tree_sha: str,
        parent_shas: tuple[str, ...],
        author_name: str,
        author_email: str,
    ) -> str:
        commit_sha = super().create_commit(
            message=message,
            tree_sha=tree_sha,
            parent_shas=parent_shas,
            author_name=author_name,
            author_email=author_email,
        )
        self.commit_trees[commit_sha] = tree_sha
        return commit_sha


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


@requires_git
def test_run_applies_review_comments_with_git() -> None:
    already_applied = "```diff\n--- a/b.py\n+++ b/b.py\n@@ -1 +1 @@\n-zero\n+two\n```"
    review = (
        "**Suggestion**\n\n"
        "Prefer an f-string here.\n\n"
        "```diff\n"
        "--- a/app.py\n"
        "+++ b/app.py\n"
        "@@ -1,2 +1,2 @@\n"
        " def greet(name):\n"
        "-    return 'hi ' + name\n"
        "+    return f'hi {name}'\n"
        "```\n"
    )
    bare_lines = "Also:\n```diff\n--- a/notes.txt\n+++ b/notes.txt\n-one\n+uno\n```"
    github = SnapshotGitHub(
        _pr(),
        [_comment(1, already_applied), _comment(2, review), _comment(3, bare_lines)],
        {
            "app.py": "def greet(name):\n    return 'hi ' + name\n",
            "b.py": "two\n",
            "notes.txt": "keep\none",
        },
    )
    bot = BotIdentity()
    pipeline = SuggestionPipeline(
        github,
        POLICY,
        bot=bot,
        readiness=ReadinessConfig(max_attempts=2, interval_seconds=0),
        sleep=lambda _: None,
    )

    outcome = pipeline.run(3)

    assert outcome.status == "merged"
    assert outcome.commit_sha == "commit-2"
    assert github.files_at("commit-2") == {
        "app.py": "def greet(name):\n    return f'hi {name}'\n",
        "b.py": "two\n",
        "notes.txt": "keep\nuno",
    }
    assert github.events.count("merge:squash") == 1
