from __future__ import annotations

from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from functools import partial
import logging
import threading
import time

from reviewloop import labels
from reviewloop.agent_adapter import AgentAdapter
from reviewloop.ci_handler import handle_ci_pending
from reviewloop.claude_adapter import ClaudeCodeAdapter
from reviewloop.config import AppConfig, RepoConfig
from reviewloop.git_ops import CheckoutManager
from reviewloop.github_gateway import GitHubGateway
from reviewloop.models import BotLabel, PipelineKind, PullRequestTask
from reviewloop.observability import log_error, log_event, log_warning
from reviewloop.review_pipeline import ReviewPipeline
from reviewloop.write_pipeline import WritePipeline


LOGGER = logging.getLogger("reviewloop.dispatcher")

TaskKey = tuple[str, str, int]
PipelineRunner = Callable[[PullRequestTask], object]

DISPATCH_LABELS: tuple[tuple[BotLabel, PipelineKind], ...] = (
    (labels.REVIEW_NEEDED, "review"),
    (labels.CHANGES_NEEDED, "write"),
    (labels.CI_PENDING, "ci"),
)


@dataclass(frozen=True)
class PipelineOutcome:
    key: TaskKey
    kind: PipelineKind
    ok: bool
    error: str | None = None


@dataclass(frozen=True)
class RepoRuntime:
    repo: RepoConfig
    github: GitHubGateway
    pipelines: dict[PipelineKind, PipelineRunner]


class InFlightRegistry:
    """Keys of PRs with a pipeline currently outstanding in this process."""

    def __init__(self) -> None:
        self._keys: set[TaskKey] = set()
        self._lock = threading.Lock()

    def try_acquire(self, key: TaskKey) -> bool:
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: TaskKey) -> None:
        with self._lock:
            self._keys.discard(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


def build_repo_runtimes(
    config: AppConfig, *, agent: AgentAdapter | None = None
) -> tuple[RepoRuntime, ...]:
    shared_agent = agent or ClaudeCodeAdapter(
        config.agent, transcripts_dir=config.runtime.transcripts_dir
    )
    runtimes: list[RepoRuntime] = []
    for repo in config.repos:
        github = GitHubGateway(repo.owner, repo.name)
        checkouts = CheckoutManager(config.runtime, repo, config.bot)
        review = ReviewPipeline(config, github, checkouts, shared_agent)
        write = WritePipeline(config, github, checkouts, shared_agent)
        runtimes.append(
            RepoRuntime(
                repo=repo,
                github=github,
                pipelines={
                    "review": review.run,
                    "write": write.run,
                    "ci": partial(
                        handle_ci_pending,
                        github,
                        ci_timeout_seconds=config.runtime.ci_timeout_seconds,
                    ),
                },
            )
        )
    return tuple(runtimes)


class Dispatcher:
    def __init__(
        self,
        config: AppConfig,
        *,
        repos: Sequence[RepoRuntime],
        registry: InFlightRegistry | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._repos = tuple(repos)
        self._registry = registry or InFlightRegistry()
        self._sleep = sleep
        self._running: list[Future[PipelineOutcome]] = []
        self._running_lock = threading.Lock()

    @property
    def registry(self) -> InFlightRegistry:
        return self._registry

    def run(self, *, once: bool) -> None:
        log_event(
            LOGGER,
            "poller_started",
            once=once,
            repo_count=len(self._repos),
            worker_count=self._config.runtime.worker_count,
        )
        with ThreadPoolExecutor(max_workers=self._config.runtime.worker_count) as pool:
            while True:
                self.poll_once(pool)
                if once:
                    self.wait_for_all()
                    break
                self._sleep(self._config.runtime.poll_interval_seconds)

    def poll_once(self, pool: ThreadPoolExecutor) -> int:
        self._reap_finished()
        dispatched = 0
        for runtime in self._repos:
            for label, kind in DISPATCH_LABELS:
                try:
                    pr_numbers = runtime.github.list_open_pull_requests_with_label(label)
                except Exception as exc:  # noqa: BLE001
                    log_warning(
                        LOGGER,
                        "label_listing_failed",
                        repo=runtime.repo.full_name,
                        label=label,
                        error_type=type(exc).__name__,
                    )
                    continue
                for pr_number in pr_numbers:
                    if self._dispatch(pool, runtime, label=label, kind=kind, pr_number=pr_number):
                        dispatched += 1
        log_event(
            LOGGER,
            "poll_completed",
            dispatched=dispatched,
            in_flight=len(self._registry),
        )
        return dispatched

    def wait_for_all(self) -> None:
        while True:
            with self._running_lock:
                futures = list(self._running)
            if not futures:
                return
            for fut in futures:
                fut.result()
            self._reap_finished()

    def _dispatch(
        self,
        pool: ThreadPoolExecutor,
        runtime: RepoRuntime,
        *,
        label: BotLabel,
        kind: PipelineKind,
        pr_number: int,
    ) -> bool:
        key: TaskKey = (runtime.repo.owner, runtime.repo.name, pr_number)
        if not self._registry.try_acquire(key):
            log_event(
                LOGGER,
                "pipeline_skipped",
                repo=runtime.repo.full_name,
                pr_number=pr_number,
                reason="already_in_flight",
            )
            return False
        try:
            fut = pool.submit(self._run_pipeline, runtime, key, label, kind)
        except Exception:
            self._registry.release(key)
            raise
        with self._running_lock:
            self._running.append(fut)
        log_event(
            LOGGER,
            "pipeline_dispatched",
            repo=runtime.repo.full_name,
            pr_number=pr_number,
            kind=kind,
        )
        return True

    def _run_pipeline(
        self, runtime: RepoRuntime, key: TaskKey, label: BotLabel, kind: PipelineKind
    ) -> PipelineOutcome:
        try:
            snapshot = runtime.github.get_pull_request(key[2])
            if label not in snapshot.labels:
                log_event(
                    LOGGER,
                    "pipeline_skipped",
                    repo=runtime.repo.full_name,
                    pr_number=key[2],
                    reason="label_changed",
                )
                return PipelineOutcome(key=key, kind=kind, ok=True)
            task = PullRequestTask(
                owner=runtime.repo.owner,
                repo=runtime.repo.name,
                number=snapshot.number,
                head_branch=snapshot.head_ref,
                base_branch=snapshot.base_ref,
                title=snapshot.title,
            )
            runtime.pipelines[kind](task)
            return PipelineOutcome(key=key, kind=kind, ok=True)
        except Exception as exc:  # noqa: BLE001
            return PipelineOutcome(
                key=key, kind=kind, ok=False, error=f"{type(exc).__name__}: {exc}"
            )
        finally:
            self._registry.release(key)

    def _reap_finished(self) -> None:
        with self._running_lock:
            finished = [fut for fut in self._running if fut.done()]
            self._running = [fut for fut in self._running if fut not in finished]
        outcomes = [fut.result() for fut in finished]
        for outcome in outcomes:
            owner, name, pr_number = outcome.key
            if outcome.ok:
                log_event(
                    LOGGER,
                    "pipeline_settled",
                    repo=f"{owner}/{name}",
                    pr_number=pr_number,
                    kind=outcome.kind,
                )
            else:
                log_error(
                    LOGGER,
                    "pipeline_failed",
                    repo=f"{owner}/{name}",
                    pr_number=pr_number,
                    kind=outcome.kind,
                    error=outcome.error,
                )
