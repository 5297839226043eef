import asyncio

import pytest

from services.common import lifespan_session
from services.request_service.app.errors import (
    ConcurrentModification,
    InsufficientStock,
    InvalidTransition,
    ItemNotFound,
    RequestNotFound,
)
from services.request_service.app.repository import RuleRepository
from services.request_service.app.rules import RuleStore


@pytest.mark.asyncio
async def test_matching_rule_auto_approves_at_creation(engine_env) -> None:
    async with engine_env() as env:
        rule = await env.add_rule(
            name="Medical supplies",
            applies_to_type="supply-order",
            priority=10,
            condition={"field": "category", "operator": "equals", "value": "medical"},
            assign_to_role="stockroom",
            auto_approve=True,
        )

        request = await env.submit(fields={"category": "medical"})

        assert request.status == "approved"
        assert request.auto_approved is True
        assert request.assigned_role == "stockroom"
        assert request.matched_rule_id == rule.id
        assert request.version == 2

        history = await env.service.list_history(request.id)
        assert [(change.from_status, change.to_status, change.actor_id) for change in history] == [
            (None, "submitted", "alice"),
            ("submitted", "approved", "system"),
        ]
        assert [event["event"] for event in env.publisher.events] == ["assigned", "status_changed"]


@pytest.mark.asyncio
async def test_no_matching_rule_leaves_request_unassigned(engine_env) -> None:
    async with engine_env() as env:
        await env.add_rule(
            applies_to_type="supply-order",
            condition={"field": "category", "operator": "equals", "value": "medical"},
            assign_to_role="stockroom",
            auto_approve=True,
        )

        request = await env.submit(fields={"category": "office"})

        assert request.status == "submitted"
        assert request.version == 1
        assert request.assigned_role is None
        assert request.assigned_principal is None
        assert request.matched_rule_id is None
        assert request.auto_approved is False
        assert request.escalation_deadline is None
        assert env.publisher.events == []


@pytest.mark.asyncio
async def test_rule_edits_do_not_reroute_existing_requests(engine_env) -> None:
    async with engine_env() as env:
        rule = await env.add_rule(assign_to_principal="dana")
        request = await env.submit("routed-form")

        async with lifespan_session(env.session_factory) as session:
            await RuleStore(RuleRepository(session)).update_rule(
                rule.id, {"assign_to_principal": None, "assign_to_role": "facilities"}
            )

        reloaded = await env.service.get_request(request.id)
        assert reloaded.assigned_principal == "dana"
        assert reloaded.assigned_role is None


@pytest.mark.asyncio
async def test_full_supply_order_fulfilment(engine_env) -> None:
    async with engine_env() as env:
        gloves = await env.add_item("Gloves", 10, minimum=2)
        masks = await env.add_item("Masks", 6)
        request = await env.submit(items=[(gloves.id, 3), (masks.id, 2)])

        request = await env.walk(request, "under_review", "approved", "received", "picking")
        assert request.fulfiller_id == env.clerk.principal_id
        assert request.version == 5

        request = await env.service.apply(
            request.id,
            "ready",
            env.clerk,
            request.version,
            fulfilled_quantities={masks.id: 1},
        )
        assert request.status == "ready"
        assert {line.item_id: line.quantity_fulfilled for line in request.line_items} == {gloves.id: 3, masks.id: 1}
        assert await env.ledger.current_quantity(gloves.id) == 7
        assert await env.ledger.current_quantity(masks.id) == 5

        fulfilment = await env.ledger.entries(gloves.id, reference_id=request.id)
        assert [(entry.delta, entry.transaction_type) for entry in fulfilment] == [(-3, "fulfillment")]

        request = await env.service.apply(request.id, "completed", env.clerk, request.version, note="Left at front desk")
        assert request.status == "completed"
        assert request.resolution_note == "Left at front desk"
        assert request.version == 7

        history = await env.service.list_history(request.id)
        assert [change.version for change in history] == [1, 2, 3, 4, 5, 6, 7]


@pytest.mark.asyncio
async def test_zero_fulfilled_quantity_skips_the_ledger(engine_env) -> None:
    async with engine_env() as env:
        key_blank = await env.add_item("Key blank", 1)
        request = await env.submit("key-request", items=[(key_blank.id, 1)])
        request = await env.walk(request, "under_review", "approved")

        request = await env.service.apply(
            request.id, "ready", env.clerk, request.version, fulfilled_quantities={key_blank.id: 0}
        )

        assert request.line_items[0].quantity_fulfilled == 0
        assert len(await env.ledger.entries(key_blank.id)) == 1


@pytest.mark.asyncio
async def test_stale_version_is_refused_and_ledger_deducted_once(engine_env) -> None:
    async with engine_env() as env:
        item = await env.add_item("Bandages", 10)
        await env.add_rule(applies_to_type="supply-order", auto_approve=True, assign_to_role="stockroom")
        request = await env.submit(items=[(item.id, 3)])
        request = await env.walk(request, "received", "picking")
        version = request.version

        first = await env.service.apply(request.id, "ready", env.clerk, version)
        assert first.version == version + 1

        with pytest.raises(ConcurrentModification):
            await env.service.apply(request.id, "ready", env.other, version)

        current = await env.service.get_request(request.id)
        assert current.status == "ready"
        assert current.version == version + 1
        assert await env.ledger.current_quantity(item.id) == 7
        assert len(await env.ledger.entries(item.id, reference_id=request.id)) == 1


@pytest.mark.asyncio
async def test_racing_transitions_apply_exactly_once(engine_env) -> None:
    async with engine_env() as env:
        item = await env.add_item("Tape", 10)
        request = await env.submit(items=[(item.id, 4)])
        request = await env.walk(request, "under_review", "approved", "received", "picking")

        results = await asyncio.gather(
            env.service.apply(request.id, "ready", env.clerk, request.version),
            env.service.apply(request.id, "ready", env.other, request.version),
            return_exceptions=True,
        )

        assert sum(1 for result in results if isinstance(result, ConcurrentModification)) == 1
        assert await env.ledger.current_quantity(item.id) == 6
        assert (await env.ledger.verify(item.id)).consistent


@pytest.mark.asyncio
async def test_version_is_checked_before_the_edge(engine_env) -> None:
    async with engine_env() as env:
        request = await env.submit("routed-form")

        with pytest.raises(ConcurrentModification):
            await env.service.apply(request.id, "completed", env.clerk, request.version + 5)


@pytest.mark.asyncio
async def test_failed_ready_leaves_everything_untouched(engine_env) -> None:
    async with engine_env() as env:
        plenty = await env.add_item("Cotton swabs", 10)
        scarce = await env.add_item("Thermometers", 1)
        request = await env.submit(items=[(plenty.id, 2), (scarce.id, 2)])
        request = await env.walk(request, "under_review", "approved", "received", "picking")
        history_before = await env.service.list_history(request.id)

        with pytest.raises(InsufficientStock):
            await env.service.apply(request.id, "ready", env.clerk, request.version)

        current = await env.service.get_request(request.id)
        assert current.status == "picking"
        assert current.version == request.version
        assert all(line.quantity_fulfilled is None for line in current.line_items)
        assert len(await env.service.list_history(request.id)) == len(history_before)
        assert await env.ledger.current_quantity(plenty.id) == 10
        assert len(await env.ledger.entries(plenty.id)) == 1
        assert await env.ledger.current_quantity(scarce.id) == 1


@pytest.mark.asyncio
async def test_invalid_fulfilled_quantities(engine_env) -> None:
    async with engine_env() as env:
        item = await env.add_item("Pens", 10)
        other = await env.add_item("Pencils", 10)
        request = await env.submit(items=[(item.id, 2)])
        request = await env.walk(request, "under_review", "approved", "received", "picking")

        with pytest.raises(ValueError):
            await env.service.apply(request.id, "ready", env.clerk, request.version, fulfilled_quantities={item.id: 3})
        with pytest.raises(ValueError):
            await env.service.apply(request.id, "ready", env.clerk, request.version, fulfilled_quantities={other.id: 1})

        assert (await env.service.get_request(request.id)).status == "picking"


@pytest.mark.asyncio
async def test_cancellation_rules(engine_env) -> None:
    async with engine_env() as env:
        request = await env.submit()

        with pytest.raises(InvalidTransition):
            await env.service.apply(request.id, "cancelled", env.other, request.version)

        cancelled = await env.service.apply(request.id, "cancelled", env.requester, request.version, note="No longer needed")
        assert cancelled.status == "cancelled"
        assert cancelled.resolution_note == "No longer needed"

        with pytest.raises(InvalidTransition):
            await env.service.apply(request.id, "submitted", env.requester, cancelled.version)

        approved = await env.walk(await env.submit(), "under_review", "approved")
        with pytest.raises(InvalidTransition):
            await env.service.apply(approved.id, "cancelled", env.requester, approved.version)

        received = await env.walk(approved, "received")
        assert (await env.service.apply(received.id, "cancelled", env.requester, received.version)).status == "cancelled"


@pytest.mark.asyncio
async def test_archive_only_completed_by_requester_once(engine_env) -> None:
    async with engine_env() as env:
        request = await env.submit("routed-form")

        with pytest.raises(InvalidTransition):
            await env.service.archive(request.id, env.requester, request.version)

        completed = await env.walk(request, "under_review", "approved", "completed")
        with pytest.raises(InvalidTransition):
            await env.service.archive(completed.id, env.clerk, completed.version)

        archived = await env.service.archive(completed.id, env.requester, completed.version)
        assert archived.archived is True
        assert archived.status == "completed"
        assert archived.version == completed.version + 1

        with pytest.raises(InvalidTransition):
            await env.service.archive(completed.id, env.requester, archived.version)


@pytest.mark.asyncio
async def test_unknown_request_and_item(engine_env) -> None:
    async with engine_env() as env:
        with pytest.raises(RequestNotFound):
            await env.service.apply("missing", "under_review", env.clerk, 1)
        with pytest.raises(RequestNotFound):
            await env.service.get_request("missing")
        with pytest.raises(ItemNotFound):
            await env.submit(items=[(404, 1)])


@pytest.mark.asyncio
async def test_delivery_failure_does_not_undo_the_transition(engine_env) -> None:
    async with engine_env() as env:
        env.publisher.failing.add("status_changed")
        request = await env.submit("routed-form")

        moved = await env.service.apply(request.id, "under_review", env.clerk, request.version)

        assert moved.status == "under_review"
        assert (await env.service.get_request(request.id)).version == 2
