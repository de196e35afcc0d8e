from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
import threading
from typing import cast

import pytest
from hypothesis import given, strategies as st

from conftest import FakeAgent, FakeGitHub
from reviewloop import labels
from reviewloop.config import AppConfig, RepoConfig
from reviewloop.dispatcher import (
    Dispatcher,
    InFlightRegistry,
    RepoRuntime,
    build_repo_runtimes,
)
from reviewloop.github_gateway import GitHubGateway
from reviewloop.models import PullRequestSnapshot, PullRequestTask
from reviewloop.observability import configure_logging


class StopLoop(Exception):
    pass


class Recorder:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []
        self.lock = threading.Lock()

    def runner(
        self, kind: str, *, error: Exception | None = None
    ) -> Callable[[PullRequestTask], None]:
        def run(task: PullRequestTask) -> None:
            with self.lock:
                self.calls.append((kind, task.number))
            if error is not None:
                raise error

        return run


def _snapshot(number: int, title: str = "PR") -> PullRequestSnapshot:
    return PullRequestSnapshot(
        number=number,
        title=title,
        head_ref=f"feature/{number}",
        head_sha="sha",
        base_ref="main",
        state="open",
        labels=(),
    )


def _runtime(github: FakeGitHub, recorder: Recorder, **errors: Exception) -> RepoRuntime:
    return RepoRuntime(
        repo=RepoConfig(repo_id=github.name, owner=github.owner, name=github.name),
        github=cast(GitHubGateway, github),
        pipelines={
            kind: recorder.runner(kind, error=errors.get(kind))
            for kind in ("review", "write", "ci")
        },
    )


def _github_with(prs: dict[int, str]) -> FakeGitHub:
    github = FakeGitHub()
    for number, label in prs.items():
        github.labels[number] = {label}
        github.pull_requests[number] = _snapshot(number, title=f"PR {number}")
    return github


def test_run_once_dispatches_each_label_to_its_pipeline(
    app_config: AppConfig, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose="low")
    github = _github_with(
        {
            1: labels.REVIEW_NEEDED,
            2: labels.CHANGES_NEEDED,
            3: labels.CI_PENDING,
            4: labels.HUMAN_REVIEW_NEEDED,
            5: labels.HUMAN_INTERVENTION,
        }
    )
    recorder = Recorder()
    dispatcher = Dispatcher(app_config, repos=[_runtime(github, recorder)])

    dispatcher.run(once=True)

    assert sorted(recorder.calls) == [("ci", 3), ("review", 1), ("write", 2)]
    assert len(dispatcher.registry) == 0
    err = capsys.readouterr().err
    assert "event=poller_started" in err
    assert err.count("event=pipeline_dispatched") == 3
    assert err.count("event=pipeline_settled") == 3


def test_task_is_built_from_current_pull_request(app_config: AppConfig) -> None:
    github = _github_with({9: labels.REVIEW_NEEDED})
    seen: list[PullRequestTask] = []
    runtime = RepoRuntime(
        repo=RepoConfig(repo_id="r", owner="o", name="r"),
        github=cast(GitHubGateway, github),
        pipelines={"review": seen.append, "write": seen.append, "ci": seen.append},
    )

    Dispatcher(app_config, repos=[runtime]).run(once=True)

    assert seen == [
        PullRequestTask(
            owner="o",
            repo="r",
            number=9,
            head_branch="feature/9",
            base_branch="main",
            title="PR 9",
        )
    ]


def test_in_flight_pull_request_is_not_dispatched_twice(
    app_config: AppConfig, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    github = _github_with({1: labels.REVIEW_NEEDED})
    release = threading.Event()
    started = threading.Event()
    calls: list[int] = []

    def slow_review(task: PullRequestTask) -> None:
        calls.append(task.number)
        started.set()
        assert release.wait(timeout=5)

    runtime = RepoRuntime(
        repo=RepoConfig(repo_id="r", owner="o", name="r"),
        github=cast(GitHubGateway, github),
        pipelines={"review": slow_review, "write": slow_review, "ci": slow_review},
    )
    dispatcher = Dispatcher(app_config, repos=[runtime])

    with ThreadPoolExecutor(max_workers=2) as pool:
        assert dispatcher.poll_once(pool) == 1
        assert started.wait(timeout=5)
        assert dispatcher.poll_once(pool) == 0
        assert ("o", "r", 1) in dispatcher.registry
        release.set()
        dispatcher.wait_for_all()

    assert calls == [1]
    assert "reason=already_in_flight" in capsys.readouterr().err


def test_label_changed_before_start_skips_pipeline(
    app_config: AppConfig, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    github = _github_with({1: labels.REVIEW_NEEDED})
    recorder = Recorder()
    dispatcher = Dispatcher(app_config, repos=[_runtime(github, recorder)])

    with ThreadPoolExecutor(max_workers=1) as pool:
        blocker = threading.Event()
        pool.submit(blocker.wait, 5)
        dispatcher.poll_once(pool)
        github.labels[1] = {labels.HUMAN_REVIEW_NEEDED}
        blocker.set()
        dispatcher.wait_for_all()

    assert recorder.calls == []
    assert "reason=label_changed" in capsys.readouterr().err


def test_pipeline_failure_is_logged_and_released(
    app_config: AppConfig, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose="low")
    github = _github_with({1: labels.CHANGES_NEEDED})
    recorder = Recorder()
    dispatcher = Dispatcher(
        app_config,
        repos=[_runtime(github, recorder, write=RuntimeError("push rejected"))],
    )

    dispatcher.run(once=True)

    assert recorder.calls == [("write", 1)]
    assert ("o", "r", 1) not in dispatcher.registry
    err = capsys.readouterr().err
    assert "event=pipeline_failed" in err
    assert "push rejected" in err


def test_listing_failure_does_not_block_other_labels(
    app_config: AppConfig, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose=True)
    github = _github_with({1: labels.REVIEW_NEEDED, 2: labels.CI_PENDING})
    github.listing_errors.add(labels.REVIEW_NEEDED)
    recorder = Recorder()

    Dispatcher(app_config, repos=[_runtime(github, recorder)]).run(once=True)

    assert recorder.calls == [("ci", 2)]
    assert "event=label_listing_failed" in capsys.readouterr().err


def test_each_repo_is_polled(app_config: AppConfig) -> None:
    first = _github_with({1: labels.REVIEW_NEEDED})
    second = _github_with({1: labels.REVIEW_NEEDED})
    second.name = "other"
    recorder = Recorder()

    Dispatcher(
        app_config, repos=[_runtime(first, recorder), _runtime(second, recorder)]
    ).run(once=True)

    assert recorder.calls == [("review", 1), ("review", 1)]


def test_run_sleeps_between_polls(app_config: AppConfig) -> None:
    github = _github_with({})
    sleeps: list[float] = []

    def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) == 2:
            raise StopLoop

    dispatcher = Dispatcher(
        app_config, repos=[_runtime(github, Recorder())], sleep=fake_sleep
    )
    with pytest.raises(StopLoop):
        dispatcher.run(once=False)

    assert sleeps == [app_config.runtime.poll_interval_seconds] * 2


def test_build_repo_runtimes_shares_agent(app_config: AppConfig) -> None:
    agent = FakeAgent()
    (runtime,) = build_repo_runtimes(app_config, agent=agent)

    assert runtime.repo.full_name == "o/r"
    assert runtime.github.full_name == "o/r"
    assert set(runtime.pipelines) == {"review", "write", "ci"}
    review_owner = getattr(runtime.pipelines["review"], "__self__")
    write_owner = getattr(runtime.pipelines["write"], "__self__")
    assert review_owner._agent is agent
    assert write_owner._agent is agent


@given(
    st.lists(
        st.tuples(st.sampled_from(["acquire", "release"]), st.integers(min_value=1, max_value=3)),
        max_size=30,
    )
)
def test_registry_admits_one_holder_per_key(ops: list[tuple[str, int]]) -> None:
    registry = InFlightRegistry()
    held: set[tuple[str, str, int]] = set()
    for op, number in ops:
        key = ("o", "r", number)
        if op == "acquire":
            assert registry.try_acquire(key) is (key not in held)
            held.add(key)
        else:
            registry.release(key)
            held.discard(key)
        assert len(registry) == len(held)
        assert all(item in registry for item in held)
