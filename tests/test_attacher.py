"""Tests for the attacher - relaying, cancellation and stream failures."""

import io
import threading
import time
from unittest.mock import MagicMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ProtocolError

from kubetrace.attacher import Attacher
from kubetrace.errors import (
    ClusterApiError,
    PodNeverRanError,
    StreamInterruptedError,
    TraceCancelledError,
)
from kubetrace.locator import PodLocator
from kubetrace.signals import CancelToken
from kubetrace.types import PodInfo


class FakeLogResponse:
    """Mimics the urllib3 response returned with _preload_content=False."""

    def __init__(self, chunks=(), error=None, block=False):
        self.chunks = list(chunks)
        self.error = error
        self.block = block
        self.closed = threading.Event()
        self.released = False

    def stream(self, amt, decode_content=True):
        for chunk in self.chunks:
            yield chunk
        if self.block:
            self.closed.wait(10)
            raise ProtocolError("Connection closed")
        if self.error is not None:
            raise self.error

    def close(self):
        self.closed.set()

    def release_conn(self):
        self.released = True


def _running_pod() -> PodInfo:
    return PodInfo(name="kubetrace-t-1-xyz", namespace="default", node_name="node-1", status="Running")


def _attacher(core_v1, out, locator=None):
    if locator is None:
        locator = MagicMock()
        locator.locate.return_value = _running_pod()
    return Attacher(core_v1, locator=locator, out=out)


class TestAttachJob:
    """Tests for Attacher.attach_job."""

    def test_relays_output_until_stream_ends(self):
        core_v1 = MagicMock()
        response = FakeLogResponse([b"@[probe]: 3\n", b"@[probe]: 4\n"])
        core_v1.read_namespaced_pod_log.return_value = response
        out = io.BytesIO()

        pod = _attacher(core_v1, out).attach_job("t-1", "default")

        assert pod.name == "kubetrace-t-1-xyz"
        assert out.getvalue() == b"@[probe]: 3\n@[probe]: 4\n"
        assert response.released
        core_v1.read_namespaced_pod_log.assert_called_once_with(
            name="kubetrace-t-1-xyz",
            namespace="default",
            container="kubetrace",
            follow=True,
            _preload_content=False,
        )

    def test_locator_errors_propagate_unchanged(self):
        core_v1 = MagicMock()
        locator = MagicMock()
        locator.locate.side_effect = PodNeverRanError("p", "Failed")

        with pytest.raises(PodNeverRanError):
            _attacher(core_v1, io.BytesIO(), locator).attach_job("t-1", "default")

        core_v1.read_namespaced_pod_log.assert_not_called()

    def test_cancel_while_blocked_detaches(self):
        """Test that cancelling a blocked read returns promptly and deletes nothing."""
        core_v1 = MagicMock()
        response = FakeLogResponse([b"first line\n"], block=True)
        core_v1.read_namespaced_pod_log.return_value = response
        out = io.BytesIO()
        cancel = CancelToken()
        threading.Timer(0.1, cancel.cancel, args=("SIGINT",)).start()

        start = time.monotonic()
        with pytest.raises(TraceCancelledError, match="SIGINT"):
            _attacher(core_v1, out).attach_job("t-1", "default", cancel)

        assert time.monotonic() - start < 2
        assert response.closed.is_set()
        assert out.getvalue() == b"first line\n"
        assert not [name for name, _, _ in core_v1.mock_calls if "delete" in name]

    def test_nothing_written_after_cancel_returns(self):
        """Test that output is final once the cancellation has been raised."""

        class SlowOutput(io.BytesIO):
            def write(self, data):
                if data == b"slow\n":
                    time.sleep(0.3)
                return super().write(data)

        core_v1 = MagicMock()
        core_v1.read_namespaced_pod_log.return_value = FakeLogResponse(
            [b"fast\n", b"slow\n", b"late\n"]
        )
        out = SlowOutput()
        cancel = CancelToken()
        threading.Timer(0.1, cancel.cancel, args=("SIGINT",)).start()

        with pytest.raises(TraceCancelledError):
            _attacher(core_v1, out).attach_job("t-1", "default", cancel)
        written = out.getvalue()
        time.sleep(0.2)

        assert written == b"fast\nslow\n"
        assert out.getvalue() == written

    def test_already_cancelled_never_opens_stream(self, pod_factory):
        core_v1 = MagicMock()
        core_v1.list_namespaced_pod.return_value = client.V1PodList(
            items=[pod_factory("p", "Running")]
        )
        locator = PodLocator(core_v1, timeout=1, initial_interval=0.01)
        cancel = CancelToken()
        cancel.cancel()

        with pytest.raises(TraceCancelledError):
            _attacher(core_v1, io.BytesIO(), locator).attach_job("t-1", "default", cancel)

        core_v1.read_namespaced_pod_log.assert_not_called()

    def test_mid_stream_failure(self):
        core_v1 = MagicMock()
        core_v1.read_namespaced_pod_log.return_value = FakeLogResponse(
            [b"partial\n"], error=ProtocolError("Connection broken")
        )
        out = io.BytesIO()

        with pytest.raises(StreamInterruptedError, match="t-1") as exc_info:
            _attacher(core_v1, out).attach_job("t-1", "default")

        assert isinstance(exc_info.value.__cause__, ProtocolError)
        assert out.getvalue() == b"partial\n"

    def test_open_failure_wrapped(self):
        core_v1 = MagicMock()
        core_v1.read_namespaced_pod_log.side_effect = ApiException(
            status=400, reason="Bad Request"
        )

        with pytest.raises(ClusterApiError) as exc_info:
            _attacher(core_v1, io.BytesIO()).attach_job("t-1", "default")

        assert exc_info.value.status == 400
