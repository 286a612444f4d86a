"""
End-to-end dispatch tests: a main-core runtime talking to real helper
nodes through the in-memory loopback transport.
"""

import asyncio
import time
from typing import Dict

import pytest

from conftest import LoopbackTransport, make_config
from corelink.application.helper import HelperNode
from corelink.application.runtime import CorelinkRuntime
from corelink.core.domain.cores import CoreStatus
from corelink.core.domain.messages import Envelope, MessageType
from corelink.core.domain.requests import RequestStatus
from corelink.core.exceptions import (
    HelperCrashError, NoCoreAvailableError, RequestTimeoutError, SecurityError,
    TransportError, TrustConflictError, UnknownCoreError, UnknownOperationError,
    UnknownRequestError
)
from corelink.infrastructure.config.models import DispatchConfig, SecurityConfig


@pytest.fixture
async def runtime(config, transport):
    rt = CorelinkRuntime(config, transport=transport)
    await rt.start()
    yield rt
    await rt.shutdown()


class TestRuntimeStartup:
    """Test cases for runtime startup and shutdown."""

    async def test_start_trusts_every_core(self, runtime: CorelinkRuntime,
                                           helpers: Dict[int, HelperNode]) -> None:
        assert runtime.is_running
        for core_id in (1, 2):
            assert runtime.registry.get_state(core_id).status is CoreStatus.TRUSTED
            assert runtime.trust_store.is_trusted(core_id)
            assert helpers[core_id].trust_store.is_trusted(0)

    async def test_status(self, runtime: CorelinkRuntime) -> None:
        status = await runtime.status()
        assert status['running'] is True
        assert [core['core_id'] for core in status['cores']] == [1, 2]
        assert set(status['components']) == {"LoopbackTransport", "Dispatcher"}
        assert all(entry['trusted'] for entry in status['trust'])

    async def test_shutdown_closes_cores_and_drops_trust(self, config, transport) -> None:
        rt = CorelinkRuntime(config, transport=transport)
        async with rt:
            assert rt.trust_store.is_trusted(1)

        assert not rt.is_running
        assert rt.registry.get_state(1).status is CoreStatus.CLOSED
        assert rt.trust_store.snapshot() == []

    def test_helper_cannot_be_core_zero(self, config) -> None:
        with pytest.raises(ValueError):
            HelperNode(0, config)


class TestDispatch:
    """Test cases for sending requests and collecting responses."""

    async def test_call_echo(self, runtime: CorelinkRuntime) -> None:
        assert await runtime.call("echo", b"hello") == b"hello"

    async def test_call_explicit_target(self, runtime: CorelinkRuntime,
                                        transport: LoopbackTransport) -> None:
        result = await runtime.call("sha256", b"abc", target=2)
        assert len(result) == 64
        assert transport.frames_of_type(2, "request")
        assert not transport.frames_of_type(1, "request")

    async def test_payload_is_encrypted_on_the_wire(self, runtime: CorelinkRuntime,
                                                    transport: LoopbackTransport) -> None:
        await runtime.call("echo", b"top-secret-payload", target=1)
        frame = transport.frames_of_type(1, "request")[-1]
        assert b"top-secret-payload" not in frame
        assert b"echo" not in frame

    async def test_load_is_held_until_receive(self, runtime: CorelinkRuntime) -> None:
        request_id = await runtime.send("echo", b"x")
        request = runtime.dispatcher.get_request(request_id)

        assert request.status is RequestStatus.IN_FLIGHT
        assert runtime.registry.get_state(request.core_id).load == 1
        assert runtime.registry.get_state(request.core_id).status is CoreStatus.BUSY

        response = await runtime.receive(request_id)

        assert response.ok
        assert response.result == b"x"
        assert request.status is RequestStatus.COMPLETED
        assert runtime.registry.get_state(request.core_id).load == 0
        assert runtime.registry.get_state(request.core_id).status is CoreStatus.TRUSTED
        with pytest.raises(UnknownRequestError):
            runtime.dispatcher.get_request(request_id)
        with pytest.raises(UnknownRequestError):
            await runtime.receive(request_id)

    async def test_least_loaded_selection(self, runtime: CorelinkRuntime) -> None:
        first = await runtime.send("echo", b"1")
        second = await runtime.send("echo", b"2")
        third = await runtime.send("echo", b"3")

        cores = [runtime.dispatcher.get_request(rid).core_id for rid in (first, second, third)]
        assert cores == [1, 2, 1]

        for rid in (first, second, third):
            await runtime.receive(rid)
        assert runtime.registry.get_state(1).load == 0
        assert runtime.registry.get_state(2).load == 0

    async def test_unknown_operation(self, runtime: CorelinkRuntime) -> None:
        with pytest.raises(UnknownOperationError):
            await runtime.call("format_disk", b"", target=1)
        assert runtime.registry.get_state(1).load == 0
        assert runtime.dispatcher.get_metrics()['requests_failed'] == 1

    async def test_failed_response_is_not_ok(self, runtime: CorelinkRuntime) -> None:
        request_id = await runtime.send("sleep", b"later")
        response = await runtime.receive(request_id)
        assert not response.ok
        assert response.error['kind'] == "RemoteOperationError"

    async def test_unknown_target(self, runtime: CorelinkRuntime) -> None:
        with pytest.raises(UnknownCoreError):
            await runtime.call("echo", b"", target=9)

    async def test_ping(self, runtime: CorelinkRuntime) -> None:
        assert await runtime.dispatcher.ping(1) >= 0


class TestTimeouts:
    """Test cases for timeouts, cancellation and expiry."""

    async def test_timeout_releases_load(self, runtime: CorelinkRuntime) -> None:
        with pytest.raises(RequestTimeoutError):
            await runtime.call("sleep", b"0.3", target=1, timeout=0.05)

        assert runtime.registry.get_state(1).load == 0
        assert runtime.dispatcher.get_metrics()['requests_timed_out'] == 1

    async def test_late_response_is_discarded(self, runtime: CorelinkRuntime,
                                              transport: LoopbackTransport) -> None:
        with pytest.raises(RequestTimeoutError):
            await runtime.call("sleep", b"0.2", target=1, timeout=0.05)

        # let the helper answer after the caller gave up
        await asyncio.sleep(0.4)

        assert runtime.registry.get_state(1).load == 0
        assert await runtime.call("echo", b"after", target=1) == b"after"
        metrics = runtime.dispatcher.get_metrics()
        assert metrics['requests_completed'] == 1
        assert metrics['requests_timed_out'] == 1

    async def test_cancelled_receive_releases_load(self, runtime: CorelinkRuntime) -> None:
        request_id = await runtime.send("sleep", b"0.5", target=2)
        waiter = asyncio.create_task(runtime.receive(request_id))
        await asyncio.sleep(0.01)
        waiter.cancel()

        with pytest.raises(asyncio.CancelledError):
            await waiter
        assert runtime.registry.get_state(2).load == 0

    async def test_purge_expired(self, runtime: CorelinkRuntime) -> None:
        request_id = await runtime.send("echo", b"forgotten", target=1)
        assert runtime.dispatcher.purge_expired(now=time.time() + 10_000) == 1

        assert runtime.registry.get_state(1).load == 0
        with pytest.raises(UnknownRequestError):
            await runtime.receive(request_id)


class TestTransmitRetry:
    """Test cases for retrying transport failures."""

    async def test_transient_failure_is_retried(self, runtime: CorelinkRuntime,
                                                transport: LoopbackTransport) -> None:
        transport.send_failures[1] = [TransportError("blip", retryable=True, core_id=1)]
        assert await runtime.call("echo", b"retry", target=1) == b"retry"
        assert runtime.dispatcher.get_metrics()['transmit_retries'] == 1

    async def test_permanent_failure_is_not_retried(self, runtime: CorelinkRuntime,
                                                    transport: LoopbackTransport) -> None:
        transport.send_failures[1] = [TransportError("gone", retryable=False, core_id=1)]
        with pytest.raises(TransportError):
            await runtime.call("echo", b"", target=1)
        assert runtime.dispatcher.get_metrics()['transmit_retries'] == 0
        assert runtime.registry.get_state(1).load == 0

    async def test_retries_are_bounded(self, runtime: CorelinkRuntime,
                                       transport: LoopbackTransport) -> None:
        transport.send_failures[1] = [
            TransportError("blip", retryable=True, core_id=1) for _ in range(3)]
        with pytest.raises(TransportError):
            await runtime.call("echo", b"", target=1)
        assert runtime.dispatcher.get_metrics()['transmit_retries'] == 2
        assert runtime.registry.get_state(1).load == 0

    async def test_exited_helper_is_not_retried(self, runtime: CorelinkRuntime,
                                                transport: LoopbackTransport) -> None:
        transport.send_failures[1] = [HelperCrashError("Helper exited with code 1", core_id=1)]
        with pytest.raises(HelperCrashError):
            await runtime.call("echo", b"", target=1)
        assert runtime.dispatcher.get_metrics()['transmit_retries'] == 0
        assert runtime.registry.get_state(1).load == 0


class TestHealthAwareSelection:
    """Test cases for dispatch around unresponsive cores."""

    async def test_unresponsive_core_is_skipped(self, runtime: CorelinkRuntime) -> None:
        for _ in range(3):
            runtime.registry.record_probe(2, False, 3, trusted=True)

        for _ in range(2):
            request_id = await runtime.send("echo", b"")
            assert runtime.dispatcher.get_request(request_id).core_id == 1
        with pytest.raises(HelperCrashError):
            await runtime.call("echo", b"", target=2)

    async def test_no_core_available(self, runtime: CorelinkRuntime) -> None:
        for core_id in (1, 2):
            for _ in range(3):
                runtime.registry.record_probe(core_id, False, 3, trusted=True)
        with pytest.raises(NoCoreAvailableError):
            await runtime.call("echo", b"")


class TestHelperSecurity:
    """Test cases for the helper side of request handling."""

    async def test_replayed_request_rejected(self, runtime: CorelinkRuntime,
                                             transport: LoopbackTransport,
                                             helpers: Dict[int, HelperNode]) -> None:
        await runtime.call("echo", b"once", target=1)
        frame = transport.frames_of_type(1, "request")[-1]

        reply = Envelope.decode(await helpers[1].handle_frame(frame))
        assert reply.type is MessageType.ERROR
        assert reply.error['kind'] == "ReplayError"

    async def test_tampered_request_rejected(self, runtime: CorelinkRuntime,
                                             transport: LoopbackTransport,
                                             helpers: Dict[int, HelperNode]) -> None:
        await runtime.call("echo", b"once", target=1)
        envelope = Envelope.decode(transport.frames_of_type(1, "request")[-1])
        envelope.nonce = b"\x07" * 16
        envelope.message_id = "forged"

        reply = Envelope.decode(await helpers[1].handle_frame(envelope.encode()))
        assert reply.error['kind'] == "DecryptionError"
        assert helpers[1].dispatcher.get_metrics()['security_failures'] == 1

    async def test_malformed_frame(self, helpers: Dict[int, HelperNode]) -> None:
        reply = Envelope.decode(await helpers[1].handle_frame(b"garbage"))
        assert reply.type is MessageType.ERROR
        assert reply.error['kind'] == "MessageFormatError"

    async def test_request_from_untrusted_core(self, helpers: Dict[int, HelperNode]) -> None:
        request = Envelope(type=MessageType.REQUEST, core_id=0, request_id="r1",
                           nonce=b"\x01" * 16, epoch=1, ciphertext=b"\x00" * 40)
        reply = Envelope.decode(await helpers[1].handle_frame(request.encode()))
        assert reply.error['kind'] == "DecryptionError"


class TestKeyLifecycle:
    """Test cases for rotation, re-handshake and restart."""

    async def test_rotate_one_core(self, runtime: CorelinkRuntime, transport: LoopbackTransport,
                                   helpers: Dict[int, HelperNode]) -> None:
        rotated = await runtime.rotate_keys(1)

        assert rotated[1].epoch == 2
        assert await runtime.call("echo", b"new key", target=1) == b"new key"
        assert Envelope.decode(transport.frames_of_type(1, "request")[-1]).epoch == 2
        assert helpers[1].trust_store.current_key(0).epoch == 2

    async def test_rotate_all_cores(self, runtime: CorelinkRuntime) -> None:
        rotated = await runtime.rotate_keys()
        assert sorted(rotated) == [1, 2]
        assert all(key.epoch == 2 for key in rotated.values())

    async def test_expired_key_handshake_keeps_in_flight_request(self) -> None:
        config = make_config(security=SecurityConfig(session_key_max_uses=2))
        transport = LoopbackTransport({c: HelperNode(c, config) for c in (1, 2)})
        async with CorelinkRuntime(config, transport=transport) as rt:
            slow = await rt.send("sleep", b"0.2", target=1)
            assert await rt.call("echo", b"second", target=1) == b"second"
            # the key is used up, so this call handshakes again first
            assert await rt.call("echo", b"third", target=1) == b"third"
            assert rt.trust_store.current_key(1).epoch == 2

            response = await rt.receive(slow)
            assert response.ok
            assert response.result == b"0.2"
            assert not rt.registry.get_state(1).security_hold
            assert rt.dispatcher.get_metrics()['security_failures'] == 0

    async def test_lost_rotation_ack_keeps_core_usable(self) -> None:
        config = make_config(
            security=SecurityConfig(key_grace_period=0.1),
            dispatch=DispatchConfig(request_timeout=2.0, retry_attempts=3, retry_delay=0.01,
                                    handshake_timeout=0.2))
        transport = LoopbackTransport({c: HelperNode(c, config) for c in (1, 2)})
        async with CorelinkRuntime(config, transport=transport) as rt:
            transport.lost_replies.add("rotate_ack")
            with pytest.raises(RequestTimeoutError):
                await rt.rotate_keys(1)
            # outlast the grace window of the key the helper would have retired
            await asyncio.sleep(0.3)

            assert await rt.call("echo", b"still here", target=1) == b"still here"
            assert not rt.registry.get_state(1).security_hold
            assert rt.trust_store.current_key(1).epoch == 1

            transport.lost_replies.clear()
            rotated = await rt.rotate_keys(1)
            assert rotated[1].epoch == 2
            assert await rt.call("echo", b"rotated", target=1) == b"rotated"
            assert transport.helpers[1].trust_store.current_key(0).epoch == 2

    async def test_changed_identity_needs_restart(self, runtime: CorelinkRuntime,
                                                  transport: LoopbackTransport,
                                                  helpers: Dict[int, HelperNode],
                                                  config) -> None:
        await helpers[1].stop()
        replacement = HelperNode(1, config)
        await replacement.start()
        transport.helpers[1] = replacement

        with pytest.raises(TrustConflictError):
            await runtime.rehandshake(1)
        assert runtime.registry.get_state(1).security_hold
        with pytest.raises(SecurityError):
            await runtime.call("echo", b"", target=1)
        assert await runtime.call("echo", b"other") == b"other"

        await runtime.restart_core(1)

        assert transport.restarts == [1]
        assert not runtime.registry.get_state(1).security_hold
        assert runtime.trust_store.fingerprint_of(1) == replacement.identity.fingerprint
        assert await runtime.call("echo", b"back", target=1) == b"back"


class TestPreSharedRuntime:
    """Test cases for the pre_shared trust policy end to end."""

    async def test_matching_secret(self) -> None:
        config = make_config(secret="s3cret")
        transport = LoopbackTransport({c: HelperNode(c, config) for c in (1, 2)})
        async with CorelinkRuntime(config, transport=transport) as rt:
            assert await rt.call("echo", b"ok") == b"ok"
            assert rt.trust_store.is_trusted(2)

    async def test_wrong_secret_puts_core_on_hold(self) -> None:
        config = make_config(secret="s3cret")
        transport = LoopbackTransport({
            1: HelperNode(1, config),
            2: HelperNode(2, make_config(secret="guess")),
        })
        async with CorelinkRuntime(config, transport=transport) as rt:
            state = rt.registry.get_state(2)
            assert state.security_hold
            assert state.status is CoreStatus.INITIALIZED
            assert not rt.trust_store.is_trusted(2)

            with pytest.raises(SecurityError):
                await rt.call("echo", b"", target=2)
            request_id = await rt.send("echo", b"")
            assert rt.dispatcher.get_request(request_id).core_id == 1
            await rt.receive(request_id)
