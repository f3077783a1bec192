"""
Installation orchestrator: runs an execution plan on a bounded worker pool.
"""

import asyncio
import heapq
import logging
import time
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

from ..models.installation import InstallationOptions, InstallationRecord, InstallResult, InstallStatus
from ..models.plan import ExecutionPlan, NodeState, PlanNode, RunSummary, ToolOutcome
from ..integrations.installers import Installer, InstallerRegistry
from .catalog import ToolCatalog
from .errors import InstallError, ManifestError
from .manifest import ManifestStore
from .progress import ProgressBus
from .resolver import DependencyResolver

CANCELLED_REASON = "cancelled"
TERMINATED_REASON = "terminated: run cancelled"

_TERMINAL_STATUS = {
    NodeState.INSTALLED: InstallStatus.INSTALLED,
    NodeState.FAILED: InstallStatus.FAILED,
    NodeState.SKIPPED: InstallStatus.SKIPPED,
}


class _RunCoordinator:
    """
    Single owner of node state and the ready queue for one run.

    All reads and writes of node state happen while holding ``_cond``; the
    install call itself runs in the worker outside of it. Ready nodes are
    popped in catalog declaration order.
    """

    def __init__(self, plan: ExecutionPlan, options: InstallationOptions,
                 manifest: ManifestStore, bus: Optional[ProgressBus]):
        self.logger = logging.getLogger(__name__)
        self.plan = plan
        self.options = options
        self.manifest = manifest
        self.bus = bus
        self._cond = asyncio.Condition()
        self._ready: List[Tuple[int, str]] = []
        self._running = 0
        self._inflight: Dict[str, Tuple[asyncio.Future, Installer]] = {}
        self._terminated: Set[str] = set()
        self.cancelled = False
        self.terminating = False
        self.halted_by: Optional[str] = None
        self.fatal: Optional[BaseException] = None
        self.invoked: Set[str] = set()
        self.started_at: Dict[str, float] = {}
        self.durations: Dict[str, float] = {}
        self.peak_running = 0

    # Setup and teardown

    def start(self) -> None:
        for tool_id in self.plan.order:
            node = self.plan.nodes[tool_id]
            if not node.dependencies:
                self._make_ready(node)

    def finalize(self) -> None:
        """Skip every node that never reached a terminal state."""
        if self.fatal is not None:
            return
        for tool_id in self.plan.order:
            node = self.plan.nodes[tool_id]
            if node.state.is_terminal:
                continue
            if self.cancelled:
                self._skip(node, CANCELLED_REASON)
            elif self.halted_by:
                self._skip(node, f"stopped after failure of {self.halted_by}", cause=self.halted_by)
            else:
                self._skip(node, "dependencies never completed")

    @property
    def stopped(self) -> bool:
        return self.cancelled or self.halted_by is not None or self.fatal is not None

    # Worker protocol

    async def acquire(self) -> Optional[PlanNode]:
        """
        Wait for the next node to install.

        Nodes already installed per the manifest are resolved here without
        being handed to a worker.

        Returns:
            A node now in Running state, or None when no more work will arrive
        """
        async with self._cond:
            while True:
                await self._cond.wait_for(
                    lambda: self.stopped or self._ready or self._running == 0
                )
                if self.stopped or not self._ready:
                    return None

                _, tool_id = heapq.heappop(self._ready)
                node = self.plan.nodes[tool_id]
                if self._resolve_without_install(node):
                    self._cond.notify_all()
                    continue

                self._set_state(node, NodeState.RUNNING)
                self._running += 1
                self.peak_running = max(self.peak_running, self._running)
                self.started_at[tool_id] = time.monotonic()
                return node

    async def complete(self, node: PlanNode, state: NodeState, reason: Optional[str] = None) -> None:
        """Record a finished install's terminal state; its manifest record is already written."""
        async with self._cond:
            self._running -= 1
            started = self.started_at.get(node.tool_id)
            if started is not None:
                self.durations[node.tool_id] = time.monotonic() - started
            self._settle(node, state, reason)
            self._cond.notify_all()

    async def abort(self, exc: BaseException) -> None:
        """Leave the run without recording the node; the run fails with ``exc``."""
        async with self._cond:
            self._running -= 1
            self._fail(exc)
            self._cond.notify_all()

    def track(self, tool_id: str, task: asyncio.Future, installer: Installer) -> None:
        self.invoked.add(tool_id)
        self._inflight[tool_id] = (task, installer)
        if self.terminating or self.fatal is not None:
            self._terminate(tool_id, task, installer)

    def untrack(self, tool_id: str) -> None:
        self._inflight.pop(tool_id, None)

    def was_terminated(self, tool_id: str) -> bool:
        return tool_id in self._terminated

    def request_cancel(self, terminate_running: bool = False) -> None:
        """
        Stop handing out nodes; optionally terminate in-flight installs that support it.

        A plain cancel followed by a terminating one terminates the installs
        still running from the first.
        """
        if not self.cancelled:
            self.cancelled = True
            self.logger.warning("Cancellation requested; no new installs will start")
            asyncio.get_running_loop().create_task(self._wake())
        if terminate_running and not self.terminating:
            self.terminating = True
            for tool_id, (task, installer) in list(self._inflight.items()):
                self._terminate(tool_id, task, installer)

    def _terminate(self, tool_id: str, task: asyncio.Future, installer: Installer) -> None:
        if installer.supports_termination and not task.done():
            self.logger.warning(f"Terminating in-flight install of {tool_id}")
            self._terminated.add(tool_id)
            task.cancel()

    def _fail(self, exc: BaseException) -> None:
        """Stop the run on an unrecoverable error and terminate what can be terminated."""
        if self.fatal is not None:
            return
        self.fatal = exc
        for tool_id, (task, installer) in list(self._inflight.items()):
            self._terminate(tool_id, task, installer)

    async def _wake(self) -> None:
        async with self._cond:
            self._cond.notify_all()

    # State transitions (caller holds the lock)

    def _set_state(self, node: PlanNode, state: NodeState, reason: Optional[str] = None) -> None:
        previous = node.transition(state, reason)
        if self.bus is not None:
            self.bus.emit(node.tool_id, previous, state, reason)

    def _make_ready(self, node: PlanNode) -> None:
        self._set_state(node, NodeState.READY)
        heapq.heappush(self._ready, (node.order, node.tool_id))

    def _resolve_without_install(self, node: PlanNode) -> bool:
        record, found = self.manifest.get(node.tool_id)
        if not found or self.options.force:
            return False
        if record.is_installed:
            self.logger.info(f"{node.tool_id} already installed ({record.installed_version}), skipping install")
            self._settle(node, NodeState.INSTALLED, "already installed")
            return True
        if record.status == InstallStatus.FAILED and not self.options.retry_failed:
            self.logger.info(f"{node.tool_id} failed previously and retries are disabled")
            self._settle(node, NodeState.FAILED, f"previous attempt failed: {record.diagnostic or 'unknown error'}")
            return True
        return False

    def _settle(self, node: PlanNode, state: NodeState, reason: Optional[str]) -> None:
        self._set_state(node, state, reason)
        dependents = self.plan.dependents_of(node.tool_id)

        if state == NodeState.INSTALLED:
            if self.stopped:
                return
            for tool_id in dependents:
                dependent = self.plan.nodes[tool_id]
                if dependent.state != NodeState.PENDING:
                    continue
                if all(self.plan.nodes[d].state == NodeState.INSTALLED for d in dependent.dependencies):
                    self._make_ready(dependent)
            return

        if state == NodeState.FAILED and self.options.fail_fast and self.halted_by is None:
            self.logger.warning(f"Stopping after failure of {node.tool_id}")
            self.halted_by = node.tool_id
        if node.tool_id in self._terminated:
            reason = CANCELLED_REASON
        else:
            reason = f"dependency {node.tool_id} {state.value}"
        for tool_id in dependents:
            dependent = self.plan.nodes[tool_id]
            if dependent.state == NodeState.PENDING:
                self._skip(dependent, reason, cause=node.tool_id)

    def _skip(self, node: PlanNode, reason: str, cause: Optional[str] = None) -> None:
        """Mark a node Skipped, record it, and skip its pending dependents."""
        if self.fatal is not None:
            return
        try:
            write_record(self.manifest, node, NodeState.SKIPPED, reason)
        except ManifestError as e:
            self.logger.error(f"Cannot record skip of {node.tool_id}: {e}")
            self._fail(e)
            return
        node.skipped_because = cause
        self._set_state(node, NodeState.SKIPPED, reason)
        for tool_id in self.plan.dependents_of(node.tool_id):
            dependent = self.plan.nodes[tool_id]
            if dependent.state == NodeState.PENDING:
                self._skip(dependent, reason if reason == CANCELLED_REASON else f"dependency {node.tool_id} skipped",
                           cause=node.tool_id)


def write_record(manifest: ManifestStore, node: PlanNode, state: NodeState,
                 reason: Optional[str] = None, result: Optional[InstallResult] = None) -> None:
    """
    Persist a node's terminal outcome.

    A Skipped outcome never replaces an existing Installed record: skipping a
    forced reinstall leaves the earlier installation in place.
    """
    existing, found = manifest.get(node.tool_id)
    if state == NodeState.SKIPPED and found and existing.is_installed:
        return

    record = InstallationRecord(
        tool_id=node.tool_id,
        installed_version=(result.version if result and result.version else "") or
                          (node.tool.version if state == NodeState.INSTALLED else ""),
        method=(result.method if result and result.method else node.tool.method),
        installed_at=datetime.now(timezone.utc),
        checksum=result.checksum if result else None,
        status=_TERMINAL_STATUS[state],
        diagnostic=None if state == NodeState.INSTALLED else reason,
        dependencies=list(node.tool.dependencies),
        user_requested=node.user_requested,
        binary_paths=list(result.binary_paths) if result else [],
        bundles=list(existing.bundles) if found else []
    )
    manifest.put(record)


class InstallationOrchestrator:
    """Orchestrates dependency-ordered, bounded-parallel tool installation."""

    def __init__(self,
                 catalog: ToolCatalog,
                 manifest: ManifestStore,
                 installers: InstallerRegistry,
                 bus: Optional[ProgressBus] = None):
        """
        Initialize the orchestrator.

        Args:
            catalog: Validated tool catalog
            manifest: Manifest store shared by all workers
            installers: Install operation per install method
            bus: Optional progress bus receiving every state transition
        """
        self.logger = logging.getLogger(__name__)
        self.catalog = catalog
        self.manifest = manifest
        self.installers = installers
        self.bus = bus
        self.resolver = DependencyResolver(catalog, manifest)
        self._coordinator: Optional[_RunCoordinator] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending_cancel: Optional[bool] = None

    def plan(self, requested: Iterable[str], options: InstallationOptions) -> ExecutionPlan:
        """Reload the manifest and resolve a plan without executing it."""
        self.manifest.reload()
        return self.resolver.resolve(requested, options)

    async def run(self, requested: Iterable[str], options: InstallationOptions) -> RunSummary:
        """
        Resolve and execute a request.

        Catalog and manifest errors propagate before anything is scheduled.
        Per-tool failures are contained in the returned summary.

        Args:
            requested: Tool ids and bundle names
            options: Run options

        Returns:
            Summary of every requested and planned tool
        """
        started = time.monotonic()
        requested = list(requested)
        self.logger.info(f"Starting installation run for: {', '.join(requested)}")

        plan = self.plan(requested, options)
        if options.dry_run:
            self.logger.info(f"Dry run: {len(plan)} tool(s) would be installed in {len(plan.layers)} layer(s)")
            return self._summarize(plan, None, options, time.monotonic() - started)

        coordinator = _RunCoordinator(plan, options, self.manifest, self.bus)
        self._coordinator = coordinator
        self._loop = asyncio.get_running_loop()
        try:
            if self._pending_cancel is not None:
                coordinator.request_cancel(self._pending_cancel)
            coordinator.start()
            workers = [
                asyncio.create_task(self._worker(coordinator, options), name=f"toolbelt-worker-{i}")
                for i in range(min(options.parallelism, max(len(plan), 1)))
            ]
            try:
                await asyncio.gather(*workers)
            except BaseException:
                for worker in workers:
                    worker.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
                raise
            coordinator.finalize()
            if coordinator.fatal is None:
                self._track_bundles(requested)
        finally:
            self._coordinator = None
            self._pending_cancel = None

        if coordinator.fatal is not None:
            raise coordinator.fatal

        summary = self._summarize(plan, coordinator, options, time.monotonic() - started)
        self.logger.info(
            f"Run complete: {summary.installed} installed, {summary.failed} failed, "
            f"{summary.skipped} skipped in {summary.duration_seconds:.1f}s"
            + (" (cancelled)" if summary.cancelled else "")
        )
        self.logger.debug(f"Peak concurrent installs: {coordinator.peak_running} of {options.parallelism}")
        return summary

    def cancel(self, terminate_running: bool = False) -> None:
        """
        Request cancellation of the current run. Safe to call from any thread.

        Args:
            terminate_running: Also terminate in-flight installs whose installer supports it
        """
        coordinator, loop = self._coordinator, self._loop
        if coordinator is None or loop is None:
            self._pending_cancel = terminate_running
            return
        loop.call_soon_threadsafe(coordinator.request_cancel, terminate_running)

    def _track_bundles(self, requested: List[str]) -> None:
        for name in requested:
            if self.catalog.is_bundle(name):
                self.manifest.track_bundle(name, self.catalog.expand_bundle(name))

    async def _worker(self, coordinator: _RunCoordinator, options: InstallationOptions) -> None:
        while True:
            node = await coordinator.acquire()
            if node is None:
                return
            await self._install_node(coordinator, node, options)

    async def _install_node(self, coordinator: _RunCoordinator, node: PlanNode,
                            options: InstallationOptions) -> None:
        tool = node.tool
        self.logger.info(f"Installing {tool.id} ({tool.method.value})")
        try:
            installer = self.installers.for_tool(tool)
        except LookupError as e:
            result = InstallResult.failure(str(e))
        else:
            task = asyncio.ensure_future(installer.install(tool, options))
            coordinator.track(tool.id, task, installer)
            try:
                result = await task
            except asyncio.CancelledError:
                if not coordinator.was_terminated(tool.id):
                    raise
                result = InstallResult.failure(TERMINATED_REASON)
            except InstallError as e:
                result = InstallResult.failure(e.diagnostic)
            except Exception as e:
                self.logger.error(f"Install operation for {tool.id} raised: {e}", exc_info=True)
                result = InstallResult.failure(f"{type(e).__name__}: {e}")
            finally:
                coordinator.untrack(tool.id)

        if coordinator.fatal is not None:
            self.logger.warning(f"Discarding outcome of {tool.id}: run aborted")
            await coordinator.abort(coordinator.fatal)
            return

        state = NodeState.INSTALLED if result.success else NodeState.FAILED
        reason = None if result.success else (result.diagnostic_text or "install operation reported failure")
        try:
            await asyncio.to_thread(write_record, self.manifest, node, state, reason, result)
        except ManifestError as e:
            self.logger.error(f"Cannot record outcome of {tool.id}: {e}")
            await coordinator.abort(e)
            return

        if result.success:
            self.logger.info(f"Installed {tool.id} {result.version}".rstrip())
        else:
            self.logger.error(f"Failed to install {tool.id}: {reason.strip().splitlines()[-1] if reason.strip() else reason}")
        await coordinator.complete(node, state, reason)

    def _summarize(self, plan: ExecutionPlan, coordinator: Optional[_RunCoordinator],
                   options: InstallationOptions, duration: float) -> RunSummary:
        outcomes: Dict[str, ToolOutcome] = {}
        for tool_id in plan.satisfied:
            outcomes[tool_id] = ToolOutcome(
                tool_id=tool_id,
                state=NodeState.INSTALLED,
                diagnostic="already installed",
                pre_satisfied=True
            )
        for tool_id in plan.order:
            node = plan.nodes[tool_id]
            outcomes[tool_id] = ToolOutcome(
                tool_id=tool_id,
                state=node.state,
                diagnostic=node.reason,
                skipped_because=node.skipped_because,
                invoked=coordinator is not None and tool_id in coordinator.invoked,
                duration_seconds=coordinator.durations.get(tool_id) if coordinator else None
            )
        return RunSummary(
            requested=plan.requested,
            outcomes=outcomes,
            layers=plan.layers,
            dry_run=options.dry_run,
            cancelled=coordinator.cancelled if coordinator else False,
            duration_seconds=duration
        )
