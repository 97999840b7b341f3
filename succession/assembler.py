"""
Registry tree assembler: publishes a whole logical tree through a pipeline.

Every node is written with its parent's freshly produced address as parent
context, so a child is only scheduled once its parent's write has finished.
Siblings have no ordering between them and may be written in parallel.
"""

from __future__ import annotations

import enum
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import DuplicateSuccessor, SuccessionError, WriteCancelled, format_name_path
from .kdc import Address, Parent, RootSeed
from .pipeline import Outcome, OutcomeKind, Pipeline, RecordDescriptor
from .store import RecoveryReport

logger = logging.getLogger(__name__)

NamePath = Tuple[bytes, ...]


@dataclass
class LogicalNode:
    """A record to publish together with its successors."""
    name: bytes
    metadata: Dict[str, bytes] = field(default_factory=dict)
    payload: bytes = b""
    children: List["LogicalNode"] = field(default_factory=list)

    def add(self, child: "LogicalNode") -> "LogicalNode":
        self.children.append(child)
        return child

    def count(self) -> int:
        return 1 + sum(c.count() for c in self.children)


class FailurePolicy(enum.Enum):
    FAIL_FAST = "fail-fast"
    BEST_EFFORT = "best-effort"


@dataclass
class BuildSummary:
    addresses: Dict[NamePath, Address] = field(default_factory=dict)
    outcomes: Dict[NamePath, Outcome] = field(default_factory=dict)
    failures: List[Tuple[NamePath, SuccessionError]] = field(default_factory=list)
    recovery: Optional[RecoveryReport] = None

    def record(self, outcome: Outcome) -> None:
        self.addresses[outcome.path] = outcome.address
        self.outcomes[outcome.path] = outcome

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes.values() if o.kind is kind)

    @property
    def created(self) -> int:
        return self.count(OutcomeKind.CREATED)

    @property
    def updated(self) -> int:
        return self.count(OutcomeKind.UPDATED)

    @property
    def unchanged(self) -> int:
        return self.count(OutcomeKind.UNCHANGED)

    @property
    def ok(self) -> bool:
        return not self.failures

    def path_of(self, address: Address) -> Optional[NamePath]:
        for path, addr in self.addresses.items():
            if addr == address:
                return path
        return None


def _check_successors(node: LogicalNode) -> None:
    seen = set()
    for child in node.children:
        if child.name in seen:
            raise DuplicateSuccessor(f"successor name {child.name!r} appears more than once")
        seen.add(child.name)


class RegistryBuilder:
    def __init__(
        self,
        pipeline: Pipeline,
        policy: FailurePolicy = FailurePolicy.FAIL_FAST,
        jobs: int = 1,
        cancel: Optional[threading.Event] = None,
    ):
        if jobs < 1:
            raise ValueError("jobs must be at least 1")
        self.pipeline = pipeline
        self.policy = policy
        self.jobs = jobs
        self.cancel = cancel

    def build(self, root_seed: RootSeed, root: LogicalNode, recover: bool = False) -> BuildSummary:
        """Publish the tree under ``root_seed``.

        ``recover`` first finishes or undoes staging left in the store by an
        interrupted run. It discards every uncommitted staging entry, so only
        pass it while no other writer is using the store.
        """
        summary = BuildSummary()
        if recover:
            summary.recovery = self.pipeline.store.recover()
            if not summary.recovery.clean:
                logger.warning("Recovered store before build: %s", summary.recovery)
        root_path = (root.name,)
        if self.jobs == 1:
            self._build_subtree(root_seed, root, root_path, summary)
        else:
            self._build_parallel(root_seed, root, root_path, summary)
        logger.info(
            "Built %d records: %d created, %d updated, %d unchanged, %d failed",
            len(summary.outcomes) + len(summary.failures),
            summary.created, summary.updated, summary.unchanged, len(summary.failures),
        )
        return summary

    def _write_node(self, parent: Parent, node: LogicalNode, path: NamePath) -> Outcome:
        try:
            _check_successors(node)
            return self.pipeline.write(
                RecordDescriptor(parent=parent, name=node.name, metadata=node.metadata, payload=node.payload, path=path),
                cancel=self.cancel,
            )
        except SuccessionError as exc:
            if exc.path is None:
                exc.path = path
            raise

    def _handle_failure(self, path: NamePath, exc: SuccessionError, summary: BuildSummary) -> None:
        if self.policy is FailurePolicy.FAIL_FAST or isinstance(exc, WriteCancelled):
            raise exc
        logger.warning("Skipping subtree %s: %s", format_name_path(path), exc)
        summary.failures.append((path, exc))

    def _build_subtree(self, parent: Parent, node: LogicalNode, path: NamePath, summary: BuildSummary) -> None:
        try:
            outcome = self._write_node(parent, node, path)
        except SuccessionError as exc:
            self._handle_failure(path, exc, summary)
            return
        summary.record(outcome)
        for child in node.children:
            self._build_subtree(outcome.address, child, path + (child.name,), summary)

    def _build_parallel(self, root_seed: RootSeed, root: LogicalNode, root_path: NamePath, summary: BuildSummary) -> None:
        # Children are submitted from this thread once their parent completes,
        # so no worker ever waits on another.
        with ThreadPoolExecutor(max_workers=self.jobs) as pool:
            pending: Dict[Future, Tuple[LogicalNode, NamePath]] = {
                pool.submit(self._write_node, root_seed, root, root_path): (root, root_path)
            }
            try:
                while pending:
                    done, _ = wait(pending, return_when=FIRST_COMPLETED)
                    for fut in done:
                        node, path = pending.pop(fut)
                        try:
                            outcome = fut.result()
                        except SuccessionError as exc:
                            self._handle_failure(path, exc, summary)
                            continue
                        summary.record(outcome)
                        for child in node.children:
                            child_path = path + (child.name,)
                            pending[pool.submit(self._write_node, outcome.address, child, child_path)] = (child, child_path)
            except BaseException:
                for fut in pending:
                    fut.cancel()
                raise


def build(
    root_seed: RootSeed,
    logical_tree: LogicalNode,
    pipeline: Pipeline,
    policy: FailurePolicy = FailurePolicy.FAIL_FAST,
    jobs: int = 1,
) -> BuildSummary:
    """Publish ``logical_tree`` under ``root_seed``. Returns the build summary."""
    return RegistryBuilder(pipeline, policy=policy, jobs=jobs).build(root_seed, logical_tree)
