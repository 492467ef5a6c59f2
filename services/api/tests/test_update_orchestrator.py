"""Tests for the update fan-out: retries, failure isolation and dead-token cleanup."""

from collections import defaultdict
from unittest.mock import AsyncMock

import pytest

from conftest import PASS_TYPE
from walletpass.errors import NotFoundError
from walletpass.services.push_dispatcher import DeliveryOutcome, DeliveryResult
from walletpass.services.registration_store import RegistrationStore
from walletpass.services.update_orchestrator import UpdateOrchestrator

TOKEN_A = "a" * 64
TOKEN_B = "b" * 64
TOKEN_C = "c" * 64


class ScriptedDispatcher:
    """Returns queued outcomes per push token; SUCCESS once a queue runs dry."""

    def __init__(self, script: dict[str, list[DeliveryOutcome]]):
        self._script = {token: list(outcomes) for token, outcomes in script.items()}
        self.calls: dict[str, int] = defaultdict(int)
        self.topics: list[str] = []

    async def send_update(self, push_token: str, topic: str) -> DeliveryResult:
        self.calls[push_token] += 1
        self.topics.append(topic)
        queue = self._script.get(push_token) or []
        outcome = queue.pop(0) if queue else DeliveryOutcome.SUCCESS
        status = {DeliveryOutcome.SUCCESS: 200, DeliveryOutcome.DEAD_TOKEN: 410}.get(outcome)
        return DeliveryResult(outcome, status_code=status, reason=outcome.value)


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def orchestrator_for(session_factory, settings, sleep):
    def _build(dispatcher):
        return UpdateOrchestrator(session_factory, dispatcher, settings, sleep=sleep)

    return _build


class TestPassChanged:
    @pytest.mark.asyncio
    async def test_notifies_every_registered_device(self, make_pass, register_device, orchestrator_for):
        await make_pass(tag=1_000)
        await register_device(device_id="dev-a", push_token=TOKEN_A)
        await register_device(device_id="dev-b", push_token=TOKEN_B)
        dispatcher = ScriptedDispatcher({})

        report = await orchestrator_for(dispatcher).pass_changed(PASS_TYPE, "1234")

        assert report.delivered == 2
        assert report.failed == 0
        assert report.last_update_tag > 1_000
        assert dict(dispatcher.calls) == {TOKEN_A: 1, TOKEN_B: 1}
        assert set(dispatcher.topics) == {PASS_TYPE}

    @pytest.mark.asyncio
    async def test_tag_is_bumped_before_pushing(self, make_pass, orchestrator_for, session_factory):
        await make_pass(tag=1_000)

        report = await orchestrator_for(ScriptedDispatcher({})).pass_changed(PASS_TYPE, "1234")

        async with session_factory() as session:
            wallet_pass = await RegistrationStore(session).get_pass(PASS_TYPE, "1234")
        assert wallet_pass.last_update_tag == report.last_update_tag
        assert report.notifications == []

    @pytest.mark.asyncio
    async def test_timeout_is_retried_once_and_others_continue(
        self, make_pass, register_device, orchestrator_for, sleep
    ):
        await make_pass()
        await register_device(device_id="dev-a", push_token=TOKEN_A)
        await register_device(device_id="dev-b", push_token=TOKEN_B)
        dispatcher = ScriptedDispatcher(
            {
                TOKEN_A: [DeliveryOutcome.TIMEOUT],
                TOKEN_B: [DeliveryOutcome.TIMEOUT, DeliveryOutcome.TIMEOUT],
            }
        )

        report = await orchestrator_for(dispatcher).pass_changed(PASS_TYPE, "1234")

        by_device = {n.target.device_library_identifier: n for n in report.notifications}
        assert by_device["dev-a"].outcome is DeliveryOutcome.SUCCESS
        assert by_device["dev-a"].attempts == 2
        assert by_device["dev-b"].outcome is DeliveryOutcome.TIMEOUT
        assert by_device["dev-b"].attempts == 2
        assert dispatcher.calls[TOKEN_B] == 2
        assert report.delivered == 1
        assert report.failed == 1
        assert sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_dead_token_registration_removed(
        self, make_pass, register_device, orchestrator_for, session_factory
    ):
        await make_pass()
        await register_device(device_id="dev-a", push_token=TOKEN_A)
        await register_device(device_id="dev-c", push_token=TOKEN_C)
        dispatcher = ScriptedDispatcher({TOKEN_C: [DeliveryOutcome.DEAD_TOKEN]})

        report = await orchestrator_for(dispatcher).pass_changed(PASS_TYPE, "1234")

        assert report.removed_registrations == 1
        # Dead tokens are not retried
        assert dispatcher.calls[TOKEN_C] == 1
        async with session_factory() as session:
            targets = await RegistrationStore(session).push_targets(PASS_TYPE, "1234")
        assert [t.device_library_identifier for t in targets] == ["dev-a"]

    @pytest.mark.asyncio
    async def test_rejected_is_not_retried(self, make_pass, register_device, orchestrator_for, sleep):
        await make_pass()
        await register_device(device_id="dev-a", push_token=TOKEN_A)
        dispatcher = ScriptedDispatcher({TOKEN_A: [DeliveryOutcome.REJECTED]})

        report = await orchestrator_for(dispatcher).pass_changed(PASS_TYPE, "1234")

        assert report.notifications[0].outcome is DeliveryOutcome.REJECTED
        assert dispatcher.calls[TOKEN_A] == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_dispatcher_error_does_not_abort_fan_out(
        self, make_pass, register_device, orchestrator_for
    ):
        await make_pass()
        await register_device(device_id="dev-a", push_token=TOKEN_A)
        await register_device(device_id="dev-b", push_token=TOKEN_B)
        healthy = ScriptedDispatcher({})

        async def send_update(push_token, topic):
            if push_token == TOKEN_A:
                raise RuntimeError("boom")
            return await healthy.send_update(push_token, topic)

        dispatcher = AsyncMock()
        dispatcher.send_update.side_effect = send_update

        report = await orchestrator_for(dispatcher).pass_changed(PASS_TYPE, "1234")

        by_device = {n.target.device_library_identifier: n.outcome for n in report.notifications}
        assert by_device == {"dev-a": DeliveryOutcome.TRANSPORT_ERROR, "dev-b": DeliveryOutcome.SUCCESS}

    @pytest.mark.asyncio
    async def test_unknown_pass_raises_not_found(self, orchestrator_for):
        with pytest.raises(NotFoundError):
            await orchestrator_for(ScriptedDispatcher({})).pass_changed(PASS_TYPE, "missing")

    @pytest.mark.asyncio
    async def test_report_as_dict(self, make_pass, register_device, orchestrator_for):
        await make_pass()
        await register_device(device_id="dev-a", push_token=TOKEN_A)

        report = await orchestrator_for(ScriptedDispatcher({})).pass_changed(PASS_TYPE, "1234")

        summary = report.as_dict()
        assert summary["devices"] == 1
        assert summary["delivered"] == 1
        assert summary["serial_number"] == "1234"
