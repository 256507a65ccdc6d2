import threading

import pytest

from mobile.recaply.services.connectivity import ConnectionType, ManualConnectivity
from mobile.recaply.services.logger import LogBuffer
from mobile.recaply.services.network import UploadReceipt, UploadRejected, UploadTransportError
from mobile.recaply.services.policy import NetworkPolicyEvaluator
from mobile.recaply.services.uploader import QueueMonitor, UploadQueueProcessor
from mobile.recaply.store.queue_store import QueueStatus, UploadQueue
from mobile.recaply.store.settings_store import SettingsStore


class RecordingQueue(UploadQueue):
    def __init__(self, path):
        super().__init__(path)
        self.transitions = []

    def update_status(self, entry_id, status, error=None):
        self.transitions.append((entry_id, status))
        return super().update_status(entry_id, status, error)


class FakeClient:
    def __init__(self, outcomes=None, credentials=True):
        self.outcomes = dict(outcomes or {})
        self.credentials = credentials
        self.calls = []

    def has_credentials(self):
        return self.credentials

    def upload_recording(self, item):
        self.calls.append(item.filename)
        outcome = self.outcomes.get(item.filename)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else None
        if isinstance(outcome, Exception):
            raise outcome
        return UploadReceipt(recording_id=f"srv-{item.filename}", transcription="t")


@pytest.fixture()
def env(tmp_path):
    connectivity = ManualConnectivity(ConnectionType.WIFI)
    settings = SettingsStore(tmp_path / "settings.json")
    queue = RecordingQueue(tmp_path / "queue.json")
    policy = NetworkPolicyEvaluator(connectivity, settings)

    def build(client):
        return UploadQueueProcessor(queue, client, policy, LogBuffer())

    return tmp_path, queue, connectivity, settings, build


def _capture(tmp_path, queue, name):
    audio = tmp_path / name
    audio.write_bytes(b"audio")
    return queue.enqueue(str(audio), name), audio


def test_successful_upload_completes_and_deletes_audio(env):
    tmp_path, queue, _, _, build = env
    item, audio = _capture(tmp_path, queue, "a.m4a")

    report = build(FakeClient()).process_queue()

    assert report.uploaded == 1
    assert [s for _, s in queue.transitions] == [QueueStatus.UPLOADING, QueueStatus.COMPLETED]
    assert queue.get(item.id) is None
    assert not audio.exists()


def test_timeout_marks_failed_and_keeps_audio(env):
    tmp_path, queue, _, _, build = env
    item, audio = _capture(tmp_path, queue, "a.m4a")
    client = FakeClient({"a.m4a": UploadTransportError("timed out")})

    report = build(client).process_queue()

    assert report.failed == 1
    assert [s for _, s in queue.transitions] == [QueueStatus.UPLOADING, QueueStatus.FAILED]
    stored = queue.get(item.id)
    assert stored.status is QueueStatus.FAILED
    assert stored.last_error == "timed out"
    assert audio.exists()


def test_policy_denial_is_a_no_op(env):
    tmp_path, queue, connectivity, settings, build = env
    _capture(tmp_path, queue, "a.m4a")
    settings.update_network_policy(wifi_only=True)
    connectivity.set(ConnectionType.CELLULAR)
    client = FakeClient()

    report = build(client).process_queue()

    assert report.skipped_reason == "WiFi only mode enabled"
    assert queue.transitions == []
    assert client.calls == []


def test_missing_credentials_defers_without_transitions(env):
    tmp_path, queue, _, _, build = env
    _capture(tmp_path, queue, "a.m4a")
    client = FakeClient(credentials=False)

    report = build(client).process_queue()

    assert report.skipped_reason == "credentials missing"
    assert queue.transitions == []
    assert client.calls == []


def test_failed_item_is_retried_on_next_pass(env):
    tmp_path, queue, _, _, build = env
    item, audio = _capture(tmp_path, queue, "a.m4a")
    client = FakeClient({"a.m4a": [UploadRejected(503, "busy"), UploadRejected(500), None]})
    processor = build(client)

    processor.process_queue()
    processor.process_queue()
    assert queue.get(item.id).status is QueueStatus.FAILED
    assert queue.get(item.id).attempts == 2

    report = processor.process_queue()
    assert report.uploaded == 1
    assert client.calls == ["a.m4a"] * 3
    assert len(queue) == 0
    assert not audio.exists()


def test_one_failure_does_not_block_later_items(env):
    tmp_path, queue, _, _, build = env
    _capture(tmp_path, queue, "a.m4a")
    second, _ = _capture(tmp_path, queue, "b.m4a")
    _capture(tmp_path, queue, "c.m4a")
    client = FakeClient({"b.m4a": UploadRejected(500, "boom")})

    report = build(client).process_queue()

    assert client.calls == ["a.m4a", "b.m4a", "c.m4a"]
    assert (report.uploaded, report.failed) == (2, 1)
    assert [i.id for i in queue.list()] == [second.id]


def test_uploading_items_are_not_picked_up(env):
    tmp_path, queue, _, _, build = env
    item, _ = _capture(tmp_path, queue, "a.m4a")
    queue.update_status(item.id, QueueStatus.UPLOADING)
    client = FakeClient()

    build(client).process_queue()

    assert client.calls == []


def test_overlapping_passes_are_single_flight(env):
    tmp_path, queue, _, _, build = env
    _capture(tmp_path, queue, "a.m4a")
    entered = threading.Event()
    release = threading.Event()

    class BlockingClient(FakeClient):
        def upload_recording(self, item):
            entered.set()
            release.wait(timeout=5)
            return super().upload_recording(item)

    client = BlockingClient()
    processor = build(client)
    worker = threading.Thread(target=processor.process_queue)
    worker.start()
    assert entered.wait(timeout=5)

    report = processor.process_queue()
    release.set()
    worker.join(timeout=5)

    assert report.skipped_reason == "already running"
    assert client.calls == ["a.m4a"]
    assert len(queue) == 0


def _monitor(processor, connectivity, interval=60.0):
    passes = []
    ran = threading.Event()

    def on_pass(report):
        passes.append(report)
        ran.set()

    monitor = QueueMonitor(processor, connectivity, LogBuffer(), interval=interval, on_pass=on_pass)
    return monitor, passes, ran


def test_monitor_flushes_backlog_on_start(env):
    tmp_path, queue, connectivity, _, build = env
    _capture(tmp_path, queue, "a.m4a")
    monitor, passes, ran = _monitor(build(FakeClient()), connectivity)

    monitor.start()
    try:
        assert ran.wait(timeout=5)
    finally:
        monitor.stop()
    assert passes[0].uploaded == 1
    assert len(queue) == 0


def test_monitor_reacts_to_connectivity(env):
    tmp_path, queue, connectivity, _, build = env
    connectivity.set(ConnectionType.NONE)
    monitor, passes, ran = _monitor(build(FakeClient()), connectivity)
    monitor.start()
    try:
        assert ran.wait(timeout=5)
        assert passes[0].skipped_reason == "No internet connection"
        ran.clear()

        _capture(tmp_path, queue, "a.m4a")
        connectivity.set(ConnectionType.WIFI)
        assert ran.wait(timeout=5)
    finally:
        monitor.stop()
    assert passes[-1].uploaded == 1
    assert len(queue) == 0


def test_monitor_periodic_pass_picks_up_policy_change(env):
    tmp_path, queue, connectivity, settings, build = env
    connectivity.set(ConnectionType.CELLULAR)
    settings.update_network_policy(allow_cellular=False)
    _capture(tmp_path, queue, "a.m4a")
    monitor, passes, ran = _monitor(build(FakeClient()), connectivity, interval=0.05)
    monitor.start()
    try:
        assert ran.wait(timeout=5)
        assert len(queue) == 1
        monitor.set_periodic(True)
        settings.update_network_policy(allow_cellular=True)
        for _ in range(100):
            ran.clear()
            if not ran.wait(timeout=1) or len(queue) == 0:
                break
    finally:
        monitor.stop()
    assert len(queue) == 0


def test_monitor_stop_unsubscribes(env):
    _, _, connectivity, _, build = env
    monitor, passes, ran = _monitor(build(FakeClient()), connectivity)
    monitor.start()
    assert ran.wait(timeout=5)
    monitor.stop()
    count = len(passes)
    connectivity.set(ConnectionType.WIFI)
    assert len(passes) == count


def test_unexpected_client_error_marks_failed_and_continues(env):
    tmp_path, queue, _, _, build = env
    first, audio = _capture(tmp_path, queue, "a.m4a")
    _capture(tmp_path, queue, "b.m4a")
    closed = RuntimeError("Cannot send a request, as the client has been closed.")
    client = FakeClient({"a.m4a": [closed, None]})
    processor = build(client)

    report = processor.process_queue()

    assert (report.uploaded, report.failed) == (1, 1)
    stored = queue.get(first.id)
    assert stored.status is QueueStatus.FAILED
    assert "client has been closed" in stored.last_error
    assert audio.exists()

    report = processor.process_queue()
    assert report.uploaded == 1
    assert client.calls == ["a.m4a", "b.m4a", "a.m4a"]
    assert len(queue) == 0


def test_monitor_stop_reports_pass_still_running(env):
    tmp_path, queue, connectivity, _, build = env
    _capture(tmp_path, queue, "a.m4a")
    entered = threading.Event()
    release = threading.Event()

    class BlockingClient(FakeClient):
        def upload_recording(self, item):
            entered.set()
            release.wait(timeout=5)
            return super().upload_recording(item)

    monitor, _, ran = _monitor(build(BlockingClient()), connectivity)
    monitor.start()
    assert entered.wait(timeout=5)

    assert monitor.stop(timeout=0.1) is False
    release.set()
    assert ran.wait(timeout=5)
    assert len(queue) == 0
