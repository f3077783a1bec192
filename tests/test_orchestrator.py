"""
Tests for the installation orchestrator.
"""

import asyncio
import threading
import time

import pytest

from toolbelt.core import (
    InstallationOrchestrator,
    ManifestStore,
    ProgressBus,
    CatalogError,
    ManifestError,
    ManifestErrorKind,
    CancellationError,
    InstallError
)
from toolbelt.integrations import InstallerRegistry, MockInstaller
from toolbelt.models import InstallationOptions, InstallMethod, InstallStatus, NodeState

from conftest import FakeInstaller, make_catalog, registry_for, installed_record


def run(catalog, manifest, installer, requested, bus=None, **options):
    orchestrator = InstallationOrchestrator(catalog, manifest, registry_for(installer), bus=bus)
    options.setdefault("parallelism", 2)
    return asyncio.run(orchestrator.run(requested, InstallationOptions(**options)))


def test_all_succeed_and_siblings_run_concurrently(abc_catalog, manifest):
    installer = FakeInstaller(delay=0.05)
    summary = run(abc_catalog, manifest, installer, ["B", "C"])

    assert summary.layers == [["A"], ["B", "C"]]
    assert summary.states() == {"A": NodeState.INSTALLED, "B": NodeState.INSTALLED, "C": NodeState.INSTALLED}
    assert summary.success and summary.exit_code == 0
    assert installer.calls[0] == "A"

    a_end = installer.intervals["A"][1]
    b_start, b_end = installer.intervals["B"]
    c_start, c_end = installer.intervals["C"]
    assert b_start >= a_end and c_start >= a_end
    assert b_start < c_end and c_start < b_end

    for tool_id in "ABC":
        assert manifest.is_installed(tool_id)
    record, _ = manifest.get("B")
    assert record.installed_version == "1.0.0"
    assert record.user_requested is True
    assert manifest.get("A")[0].user_requested is False


def test_root_failure_skips_dependents(abc_catalog, manifest):
    installer = FakeInstaller(fail={"A"})
    summary = run(abc_catalog, manifest, installer, ["B", "C"])

    assert summary.states() == {"A": NodeState.FAILED, "B": NodeState.SKIPPED, "C": NodeState.SKIPPED}
    assert installer.calls == ["A"]
    assert summary.outcomes["A"].diagnostic == "make: *** [A] Error 2"
    assert summary.outcomes["B"].skipped_because == "A"
    assert summary.exit_code == 1

    record, _ = manifest.get("A")
    assert record.status == InstallStatus.FAILED
    assert record.diagnostic == "make: *** [A] Error 2"
    record, _ = manifest.get("C")
    assert record.status == InstallStatus.SKIPPED

    with pytest.raises(InstallError) as exc_info:
        summary.raise_for_status()
    assert exc_info.value.tool_ids == ["A", "B", "C"]


def test_diamond_failure_is_contained(diamond_catalog, manifest):
    installer = FakeInstaller(fail={"B"})
    summary = run(diamond_catalog, manifest, installer, ["D"])

    assert summary.states() == {
        "A": NodeState.INSTALLED,
        "B": NodeState.FAILED,
        "C": NodeState.INSTALLED,
        "D": NodeState.SKIPPED,
    }
    assert "D" not in installer.calls
    assert summary.outcomes["D"].skipped_because == "B"


def test_skip_propagates_transitively(manifest):
    catalog = make_catalog({"A": [], "B": ["A"], "C": ["B"], "D": ["C"], "E": []})
    installer = FakeInstaller(fail={"A"})
    summary = run(catalog, manifest, installer, ["D", "E"])

    assert summary.states()["D"] == NodeState.SKIPPED
    assert summary.outcomes["D"].skipped_because == "C"
    assert summary.states()["E"] == NodeState.INSTALLED
    assert sorted(installer.calls) == ["A", "E"]


@pytest.mark.parametrize("parallelism", [1, 2, 3])
def test_concurrency_cap(manifest, parallelism):
    catalog = make_catalog({f"t{i}": [] for i in range(8)})
    installer = FakeInstaller(delay=0.02)
    summary = run(catalog, manifest, installer, [f"t{i}" for i in range(8)], parallelism=parallelism)

    assert summary.installed == 8
    assert installer.peak <= parallelism
    assert installer.max_overlap() <= parallelism
    assert installer.peak == parallelism


def test_ready_nodes_start_in_declaration_order(manifest):
    catalog = make_catalog({"x": [], "y": [], "z": []})
    installer = FakeInstaller()
    run(catalog, manifest, installer, ["z", "x", "y"], parallelism=1)
    assert installer.calls == ["x", "y", "z"]


def test_second_run_invokes_nothing(diamond_catalog, manifest):
    installer = FakeInstaller()
    first = run(diamond_catalog, manifest, installer, ["D"])
    assert first.invocations == 4

    second = run(diamond_catalog, manifest, installer, ["D"])
    assert len(installer.calls) == 4
    assert second.invocations == 0
    assert all(outcome.pre_satisfied for outcome in second.outcomes.values())
    assert second.success


def test_force_reinstalls(abc_catalog, manifest):
    installer = FakeInstaller()
    run(abc_catalog, manifest, installer, ["B"])
    run(abc_catalog, manifest, installer, ["B"], force=True)
    assert installer.calls == ["A", "B", "A", "B"]


def test_restart_after_partial_run_attempts_only_missing(abc_catalog, manifest):
    manifest.put(installed_record("A"))
    restarted = ManifestStore(manifest.path)
    installer = FakeInstaller()
    summary = run(abc_catalog, restarted, installer, ["B"])

    assert installer.calls == ["B"]
    assert summary.outcomes["A"].pre_satisfied
    assert summary.states()["B"] == NodeState.INSTALLED


def test_installed_during_run_short_circuits(abc_catalog, manifest):
    def install_c_elsewhere(tool_id):
        if tool_id == "A":
            manifest.put(installed_record("C"))

    installer = FakeInstaller(on_start=install_c_elsewhere)
    summary = run(abc_catalog, manifest, installer, ["B", "C"])

    assert "C" not in installer.calls
    assert summary.states()["C"] == NodeState.INSTALLED
    assert summary.outcomes["C"].invoked is False


def test_dependency_recorded_before_dependent_starts(abc_catalog, manifest):
    seen = {}

    def check_manifest(tool_id):
        if tool_id == "B":
            seen["A"] = manifest.is_installed("A")

    run(abc_catalog, manifest, FakeInstaller(on_start=check_manifest), ["B"])
    assert seen == {"A": True}


def test_failed_tools_retried_by_default(abc_catalog, manifest):
    run(abc_catalog, manifest, FakeInstaller(fail={"A"}), ["A"])
    installer = FakeInstaller()
    summary = run(abc_catalog, manifest, installer, ["A"])
    assert installer.calls == ["A"]
    assert summary.success


def test_failed_tools_not_retried_when_disabled(abc_catalog, manifest):
    run(abc_catalog, manifest, FakeInstaller(fail={"A"}), ["A"])
    installer = FakeInstaller()
    summary = run(abc_catalog, manifest, installer, ["B"], retry_failed=False)

    assert installer.calls == []
    assert summary.states() == {"A": NodeState.FAILED, "B": NodeState.SKIPPED}
    assert summary.outcomes["A"].diagnostic.startswith("previous attempt failed")


def test_fail_fast_stops_scheduling(manifest):
    catalog = make_catalog({"bad": [], "good1": [], "good2": []})
    installer = FakeInstaller(fail={"bad"})
    summary = run(catalog, manifest, installer, ["bad", "good1", "good2"], parallelism=1, fail_fast=True)

    assert installer.calls == ["bad"]
    assert summary.states() == {
        "bad": NodeState.FAILED,
        "good1": NodeState.SKIPPED,
        "good2": NodeState.SKIPPED,
    }
    assert summary.outcomes["good1"].diagnostic == "stopped after failure of bad"


def test_fail_fast_lets_running_installs_finish(manifest):
    catalog = make_catalog({"slow": [], "bad": [], "later": []})
    installer = FakeInstaller(fail={"bad"}, delays={"slow": 0.1, "bad": 0.01})
    summary = run(catalog, manifest, installer, ["slow", "bad", "later"], parallelism=2, fail_fast=True)

    assert summary.states()["slow"] == NodeState.INSTALLED
    assert summary.states()["later"] == NodeState.SKIPPED
    assert "later" not in installer.calls


def test_without_fail_fast_independent_branches_continue(manifest):
    catalog = make_catalog({"bad": [], "good1": [], "good2": []})
    installer = FakeInstaller(fail={"bad"})
    summary = run(catalog, manifest, installer, ["bad", "good1", "good2"], parallelism=1)
    assert summary.installed == 2 and summary.failed == 1


def test_dry_run_invokes_nothing(diamond_catalog, manifest):
    installer = FakeInstaller()
    summary = run(diamond_catalog, manifest, installer, ["D"], dry_run=True)

    assert installer.calls == []
    assert summary.dry_run and summary.exit_code == 0
    assert summary.layers == [["A"], ["B", "C"], ["D"]]
    assert set(summary.states().values()) == {NodeState.PENDING}
    assert not manifest.path.exists()


def test_installer_exception_becomes_failure(abc_catalog, manifest):
    installer = FakeInstaller(raise_for={"A"})
    summary = run(abc_catalog, manifest, installer, ["B"])

    assert summary.states() == {"A": NodeState.FAILED, "B": NodeState.SKIPPED}
    assert "installer crashed on A" in summary.outcomes["A"].diagnostic


def test_missing_installer_for_method_fails_tool(manifest):
    catalog = make_catalog({"A": []})
    orchestrator = InstallationOrchestrator(
        catalog, manifest, InstallerRegistry({InstallMethod.PACKAGE_MANAGER: MockInstaller()})
    )
    summary = asyncio.run(orchestrator.run(["A"], InstallationOptions(parallelism=1)))
    assert summary.states() == {"A": NodeState.FAILED}
    assert "No installer registered" in summary.outcomes["A"].diagnostic


def test_corrupt_manifest_aborts_before_scheduling(abc_catalog, manifest):
    manifest.path.write_text("not json")
    installer = FakeInstaller()
    with pytest.raises(ManifestError):
        run(abc_catalog, manifest, installer, ["B"])
    assert installer.calls == []


def test_unknown_tool_aborts_before_scheduling(abc_catalog, manifest):
    installer = FakeInstaller()
    with pytest.raises(CatalogError):
        run(abc_catalog, manifest, installer, ["B", "ghost"])
    assert installer.calls == []


def test_progress_events_in_order_per_tool(abc_catalog, manifest):
    bus = ProgressBus()
    buffer = bus.subscribe_buffer()
    run(abc_catalog, manifest, FakeInstaller(), ["B"], bus=bus)

    transitions = {}
    for event in buffer.drain():
        transitions.setdefault(event.tool_id, []).append((event.old_state, event.new_state))
    expected = [
        (NodeState.PENDING, NodeState.READY),
        (NodeState.READY, NodeState.RUNNING),
        (NodeState.RUNNING, NodeState.INSTALLED),
    ]
    assert transitions == {"A": expected, "B": expected}


def test_cancel_lets_running_install_finish(manifest):
    catalog = make_catalog({"A": [], "B": [], "C": ["A"]})
    holder = {}

    def cancel_on_first(tool_id):
        if tool_id == "A":
            holder["orchestrator"].cancel()

    installer = FakeInstaller(on_start=cancel_on_first, delay=0.02)
    orchestrator = InstallationOrchestrator(catalog, manifest, registry_for(installer))
    holder["orchestrator"] = orchestrator
    summary = asyncio.run(orchestrator.run(["B", "C"], InstallationOptions(parallelism=1)))

    assert installer.calls == ["A"]
    assert summary.cancelled and summary.exit_code == 130
    assert summary.states() == {"A": NodeState.INSTALLED, "B": NodeState.SKIPPED, "C": NodeState.SKIPPED}
    assert summary.outcomes["B"].diagnostic == "cancelled"
    assert summary.outcomes["C"].diagnostic == "cancelled"
    assert manifest.is_installed("A")
    assert manifest.get("B")[0].status == InstallStatus.SKIPPED

    with pytest.raises(CancellationError) as exc_info:
        summary.raise_for_status()
    assert exc_info.value.pending == ["B", "C"]


def test_cancel_terminates_running_install_when_supported(manifest):
    catalog = make_catalog({"A": [], "B": ["A"]})
    installer = FakeInstaller(delay=30, supports_termination=True)
    orchestrator = InstallationOrchestrator(catalog, manifest, registry_for(installer))

    async def scenario():
        run_task = asyncio.create_task(orchestrator.run(["B"], InstallationOptions(parallelism=1)))
        while not installer.calls:
            await asyncio.sleep(0.01)
        orchestrator.cancel(terminate_running=True)
        return await asyncio.wait_for(run_task, timeout=5)

    summary = asyncio.run(scenario())
    assert summary.cancelled
    assert summary.states() == {"A": NodeState.FAILED, "B": NodeState.SKIPPED}
    assert summary.outcomes["A"].diagnostic == "terminated: run cancelled"
    assert summary.outcomes["B"].diagnostic == "cancelled"


def test_second_cancel_terminates_install_left_running_by_first(manifest):
    catalog = make_catalog({"A": [], "B": ["A"]})
    installer = FakeInstaller(delay=30, supports_termination=True)
    orchestrator = InstallationOrchestrator(catalog, manifest, registry_for(installer))

    async def scenario():
        run_task = asyncio.create_task(orchestrator.run(["B"], InstallationOptions(parallelism=1)))
        while not installer.calls:
            await asyncio.sleep(0.01)
        orchestrator.cancel()
        await asyncio.sleep(0.05)
        assert not run_task.done()
        orchestrator.cancel(terminate_running=True)
        return await asyncio.wait_for(run_task, timeout=5)

    summary = asyncio.run(scenario())
    assert summary.cancelled
    assert summary.states() == {"A": NodeState.FAILED, "B": NodeState.SKIPPED}
    assert summary.outcomes["A"].diagnostic == "terminated: run cancelled"
    assert manifest.get("A")[0].status == InstallStatus.FAILED


def test_failure_during_cancelled_run_keeps_dependency_reason(manifest):
    catalog = make_catalog({"A": [], "B": ["A"], "C": []})
    holder = {}
    installer = FakeInstaller(fail={"A"}, on_start=lambda tool_id: holder["orchestrator"].cancel())
    orchestrator = InstallationOrchestrator(catalog, manifest, registry_for(installer))
    holder["orchestrator"] = orchestrator
    summary = asyncio.run(orchestrator.run(["B", "C"], InstallationOptions(parallelism=1)))

    assert summary.cancelled
    assert installer.calls == ["A"]
    assert summary.states() == {"A": NodeState.FAILED, "B": NodeState.SKIPPED, "C": NodeState.SKIPPED}
    assert summary.outcomes["B"].diagnostic == "dependency A failed"
    assert summary.outcomes["B"].skipped_because == "A"
    assert summary.outcomes["C"].diagnostic == "cancelled"


def test_cancel_before_run_skips_everything(abc_catalog, manifest):
    installer = FakeInstaller()
    orchestrator = InstallationOrchestrator(abc_catalog, manifest, registry_for(installer))
    orchestrator.cancel()
    summary = asyncio.run(orchestrator.run(["B"], InstallationOptions(parallelism=1)))

    assert installer.calls == []
    assert summary.cancelled
    assert set(summary.states().values()) == {NodeState.SKIPPED}


def test_slow_progress_consumer_does_not_stall_installs(manifest):
    catalog = make_catalog({"A": [], "B": [], "C": [], "D": []})
    bus = ProgressBus()
    seen = []

    def slow_consumer(event):
        time.sleep(0.1)
        seen.append(event.tool_id)

    bus.subscribe(slow_consumer)
    started = time.monotonic()
    summary = run(catalog, manifest, FakeInstaller(delay=0), ["A", "B", "C", "D"], bus=bus, parallelism=4)
    elapsed = time.monotonic() - started

    assert summary.installed == 4
    assert elapsed < 0.6
    bus.close(timeout=5)
    assert len(seen) == 12


class SkipUnwritableManifest(ManifestStore):
    """Records install outcomes but cannot write Skipped records."""

    def put(self, record):
        if record.status == InstallStatus.SKIPPED:
            raise ManifestError(ManifestErrorKind.UNWRITABLE, "Cannot write manifest: read-only file system",
                                str(self.path))
        super().put(record)


def test_unwritable_skip_record_aborts_run_after_workers_stop(tmp_path):
    manifest = SkipUnwritableManifest(tmp_path / "manifest.json")
    catalog = make_catalog({"A": [], "B": ["A"], "slow": []})
    installer = FakeInstaller(fail={"A"}, delays={"A": 0.01, "slow": 0.2})
    orchestrator = InstallationOrchestrator(catalog, manifest, registry_for(installer))

    async def scenario():
        with pytest.raises(ManifestError) as exc_info:
            await orchestrator.run(["B", "slow"], InstallationOptions(parallelism=2))
        leftover = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
        await asyncio.sleep(0.3)
        return exc_info.value, leftover

    error, leftover = asyncio.run(scenario())
    assert error.kind == ManifestErrorKind.UNWRITABLE
    assert leftover == []
    assert installer.calls == ["A", "slow"]

    on_disk = ManifestStore(manifest.path)
    assert on_disk.get("A")[0].status == InstallStatus.FAILED
    assert on_disk.get("slow") == (None, False)


def test_unwritable_skip_record_terminates_running_installs(tmp_path):
    manifest = SkipUnwritableManifest(tmp_path / "manifest.json")
    catalog = make_catalog({"A": [], "B": ["A"], "slow": []})
    installer = FakeInstaller(fail={"A"}, delays={"A": 0.01, "slow": 30}, supports_termination=True)
    orchestrator = InstallationOrchestrator(catalog, manifest, registry_for(installer))

    async def scenario():
        with pytest.raises(ManifestError):
            await asyncio.wait_for(orchestrator.run(["B", "slow"], InstallationOptions(parallelism=2)), timeout=5)

    asyncio.run(scenario())
    assert ManifestStore(manifest.path).get("slow") == (None, False)


class ThreadRecordingManifest(ManifestStore):
    def __init__(self, path):
        super().__init__(path)
        self.writer_threads = []

    def put(self, record):
        self.writer_threads.append(threading.current_thread())
        super().put(record)


def test_install_outcomes_written_off_the_event_loop_thread(tmp_path, abc_catalog):
    manifest = ThreadRecordingManifest(tmp_path / "manifest.json")
    summary = run(abc_catalog, manifest, FakeInstaller(), ["B", "C"])

    assert summary.installed == 3
    assert len(manifest.writer_threads) == 3
    assert threading.current_thread() not in manifest.writer_threads


def test_bundle_request_tags_installed_members(manifest):
    catalog = make_catalog({"A": [], "B": ["A"], "C": []}, bundles=[{"name": "core", "tools": ["B", "C"]}])
    summary = run(catalog, manifest, FakeInstaller(fail={"C"}), ["core"])

    assert summary.states() == {"A": NodeState.INSTALLED, "B": NodeState.INSTALLED, "C": NodeState.FAILED}
    assert manifest.get("B")[0].bundles == ["core"]
    assert manifest.get("A")[0].bundles == []
    assert manifest.get("C")[0].bundles == []

    # A forced reinstall keeps the membership
    run(catalog, manifest, FakeInstaller(), ["B"], force=True)
    assert manifest.get("B")[0].bundles == ["core"]
