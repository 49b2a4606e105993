"""Tests for the offer engine: bids, counters, acceptance cascade, withdrawal and history."""

import uuid
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.config import settings
from app.errors import NegotiationChainCorrupt
from app.models.offer import Offer, OfferParty, OfferStatus
from app.services.offer import build_chains
from tests.conftest import create_project, customer, handyman, submit_offer


async def _project_status(client: AsyncClient, project_id: str, cust: uuid.UUID) -> str:
    resp = await client.get(f"/projects/{project_id}", headers=customer(cust))
    assert resp.status_code == 200
    return resp.json()["status"]


async def _counter(client: AsyncClient, offer_id: str, headers: dict, amount: str) -> dict:
    resp = await client.post(f"/offers/{offer_id}/counter", json={"amount": amount}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_bid_moves_project_to_has_offers(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)

    offer = await submit_offer(client, project["id"], worker, amount="100.00")
    assert offer["status"] == "pending"
    assert offer["proposedBy"] == "handyman"
    assert offer["negotiationRound"] == 1
    assert offer["isCounterOffer"] is False
    assert offer["customerId"] == str(cust)
    assert Decimal(offer["amount"]) == Decimal("100")
    assert await _project_status(client, project["id"], cust) == "has_offers"


@pytest.mark.asyncio
async def test_accepting_posted_budget(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust, initialBudget="150.00")

    resp = await client.post(
        f"/projects/{project['id']}/offers", json={"offerType": "accept"}, headers=handyman(worker)
    )
    assert resp.status_code == 201
    assert Decimal(resp.json()["amount"]) == Decimal("150")
    assert await _project_status(client, project["id"], cust) == "pending_customer_acceptance"


@pytest.mark.asyncio
async def test_bid_requires_amount(client: AsyncClient) -> None:
    project = await create_project(client, uuid.uuid4())
    resp = await client.post(
        f"/projects/{project['id']}/offers", json={"offerType": "bid"}, headers=handyman(uuid.uuid4())
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_bid_amount_must_be_positive(client: AsyncClient) -> None:
    project = await create_project(client, uuid.uuid4())
    resp = await client.post(
        f"/projects/{project['id']}/offers",
        json={"offerType": "bid", "amount": "0"},
        headers=handyman(uuid.uuid4()),
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_non_negotiable_project_rejects_other_amounts(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust, isNegotiable=False)

    resp = await client.post(
        f"/projects/{project['id']}/offers",
        json={"offerType": "bid", "amount": "90.00"},
        headers=handyman(worker),
    )
    assert resp.status_code == 422
    assert await _project_status(client, project["id"], cust) == "open"

    offer = await submit_offer(client, project["id"], worker, amount="100.00")
    assert offer["status"] == "pending"


@pytest.mark.asyncio
async def test_customer_cannot_submit_offer(client: AsyncClient) -> None:
    project = await create_project(client, uuid.uuid4())
    resp = await client.post(
        f"/projects/{project['id']}/offers",
        json={"offerType": "bid", "amount": "90.00"},
        headers=customer(uuid.uuid4()),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_cannot_bid_on_own_project(client: AsyncClient) -> None:
    owner = uuid.uuid4()
    project = await create_project(client, owner)
    resp = await client.post(
        f"/projects/{project['id']}/offers",
        json={"offerType": "bid", "amount": "90.00"},
        headers=handyman(owner),
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_one_pending_offer_per_handyman(client: AsyncClient) -> None:
    project = await create_project(client, uuid.uuid4())
    worker = uuid.uuid4()
    await submit_offer(client, project["id"], worker, amount="90.00")
    resp = await client.post(
        f"/projects/{project['id']}/offers",
        json={"offerType": "bid", "amount": "85.00"},
        headers=handyman(worker),
    )
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_open_customer_counter_blocks_new_bid(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker, amount="100.00")
    counter = (await _counter(client, offer["id"], customer(cust), "80.00"))["counter"]

    resp = await client.post(
        f"/projects/{project['id']}/offers",
        json={"offerType": "bid", "amount": "90.00"},
        headers=handyman(worker),
    )
    assert resp.status_code == 409

    # Answering the counter frees the handyman to bid again
    resp = await client.post(f"/offers/{counter['id']}/reject", headers=handyman(worker))
    assert resp.status_code == 200
    fresh = await submit_offer(client, project["id"], worker, amount="90.00")
    assert fresh["negotiationRound"] == 1


@pytest.mark.asyncio
async def test_bid_on_cancelled_project_rejected(client: AsyncClient) -> None:
    cust = uuid.uuid4()
    project = await create_project(client, cust)
    await client.post(f"/projects/{project['id']}/cancel", headers=customer(cust))
    resp = await client.post(
        f"/projects/{project['id']}/offers",
        json={"offerType": "bid", "amount": "90.00"},
        headers=handyman(uuid.uuid4()),
    )
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_new_bid_during_negotiation_keeps_status(client: AsyncClient) -> None:
    cust, first, second = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], first, amount="100.00")
    await _counter(client, offer["id"], customer(cust), "80.00")
    assert await _project_status(client, project["id"], cust) == "in_negotiation"

    await submit_offer(client, project["id"], second, amount="95.00")
    assert await _project_status(client, project["id"], cust) == "in_negotiation"


# ---------------------------------------------------------------------------
# Counter-offers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_counter_then_accept_agrees_project(client: AsyncClient) -> None:
    """Bid RM100, customer counters RM80, handyman accepts the counter."""
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker, amount="100.00")
    assert await _project_status(client, project["id"], cust) == "has_offers"

    result = await _counter(client, offer["id"], customer(cust), "80.00")
    original, counter = result["original"], result["counter"]
    assert original["status"] == "countered"
    assert original["counterOfferId"] == counter["id"]
    assert original["counteredAt"] is not None
    assert counter["status"] == "pending"
    assert counter["negotiationRound"] == 2
    assert counter["isCounterOffer"] is True
    assert counter["parentOfferId"] == offer["id"]
    assert counter["proposedBy"] == "customer"
    assert counter["estimatedDuration"] == "2 hours"
    assert await _project_status(client, project["id"], cust) == "in_negotiation"

    resp = await client.post(f"/offers/{counter['id']}/accept", headers=handyman(worker))
    assert resp.status_code == 200
    data = resp.json()
    assert data["offer"]["status"] == "accepted"
    assert data["offer"]["acceptedAt"] is not None
    assert data["project"]["status"] == "agreed_scheduled"
    assert data["project"]["handymanId"] == str(worker)
    assert data["project"]["acceptedOfferId"] == counter["id"]
    assert Decimal(data["project"]["agreedBudget"]) == Decimal("80")


@pytest.mark.asyncio
async def test_counter_back_and_forth(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker, amount="100.00")
    first = await _counter(client, offer["id"], customer(cust), "80.00")
    second = await _counter(client, first["counter"]["id"], handyman(worker), "90.00")

    assert second["counter"]["negotiationRound"] == 3
    assert second["counter"]["proposedBy"] == "handyman"
    assert second["original"]["status"] == "countered"


@pytest.mark.asyncio
async def test_cannot_counter_own_offer(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker)
    resp = await client.post(f"/offers/{offer['id']}/counter", json={"amount": "95.00"}, headers=handyman(worker))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_outsider_cannot_counter(client: AsyncClient) -> None:
    project = await create_project(client, uuid.uuid4())
    offer = await submit_offer(client, project["id"], uuid.uuid4())
    resp = await client.post(
        f"/offers/{offer['id']}/counter", json={"amount": "95.00"}, headers=customer(uuid.uuid4())
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_countered_offer_cannot_be_countered_again(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker)
    await _counter(client, offer["id"], customer(cust), "80.00")

    resp = await client.post(f"/offers/{offer['id']}/counter", json={"amount": "70.00"}, headers=customer(cust))
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_countered_offer_cannot_be_accepted(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker)
    await _counter(client, offer["id"], customer(cust), "80.00")

    resp = await client.post(f"/offers/{offer['id']}/accept", headers=customer(cust))
    assert resp.status_code == 409
    assert resp.json()["detail"] == f"Offer {offer['id']} is countered, not pending"
    assert await _project_status(client, project["id"], cust) == "in_negotiation"


@pytest.mark.asyncio
async def test_negotiation_round_cap(client: AsyncClient) -> None:
    object.__setattr__(settings, "max_negotiation_rounds", 2)
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker)
    result = await _counter(client, offer["id"], customer(cust), "80.00")

    resp = await client.post(
        f"/offers/{result['counter']['id']}/counter", json={"amount": "90.00"}, headers=handyman(worker)
    )
    assert resp.status_code == 409
    assert "Maximum of 2 negotiation rounds" in resp.json()["detail"]

    resp = await client.get(f"/offers/{result['counter']['id']}", headers=handyman(worker))
    assert resp.json()["status"] == "pending"


@pytest.mark.asyncio
async def test_counter_amount_upper_bound(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker)
    resp = await client.post(
        f"/offers/{offer['id']}/counter", json={"amount": "1000000.01"}, headers=customer(cust)
    )
    assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Acceptance
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_accept_rejects_sibling_offers(client: AsyncClient) -> None:
    """Two handymen bid; accepting A's offer rejects B's."""
    cust, worker_a, worker_b = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer_a = await submit_offer(client, project["id"], worker_a, amount="90.00")
    offer_b = await submit_offer(client, project["id"], worker_b, amount="95.00")

    resp = await client.post(f"/offers/{offer_a['id']}/accept", headers=customer(cust))
    assert resp.status_code == 200
    assert resp.json()["project"]["status"] == "agreed_scheduled"

    resp = await client.get(f"/offers/{offer_a['id']}", headers=customer(cust))
    assert resp.json()["status"] == "accepted"
    resp = await client.get(f"/offers/{offer_b['id']}", headers=customer(cust))
    data = resp.json()
    assert data["status"] == "rejected"
    assert data["rejectionReason"] == "another offer was accepted"
    assert data["rejectedAt"] is not None


@pytest.mark.asyncio
async def test_accept_after_acceptance_rejected(client: AsyncClient) -> None:
    cust, worker_a, worker_b = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer_a = await submit_offer(client, project["id"], worker_a, amount="90.00")
    offer_b = await submit_offer(client, project["id"], worker_b, amount="95.00")
    await client.post(f"/offers/{offer_a['id']}/accept", headers=customer(cust))

    resp = await client.post(f"/offers/{offer_b['id']}/accept", headers=customer(cust))
    assert resp.status_code == 409

    resp = await client.get(f"/projects/{project['id']}", headers=customer(cust))
    assert resp.json()["handymanId"] == str(worker_a)
    assert resp.json()["acceptedOfferId"] == offer_a["id"]


@pytest.mark.asyncio
async def test_cannot_accept_own_offer(client: AsyncClient) -> None:
    project = await create_project(client, uuid.uuid4())
    worker = uuid.uuid4()
    offer = await submit_offer(client, project["id"], worker)
    resp = await client.post(f"/offers/{offer['id']}/accept", headers=handyman(worker))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_accept_posted_budget_offer(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust, isNegotiable=False, initialBudget="200.00")
    resp = await client.post(
        f"/projects/{project['id']}/offers", json={"offerType": "accept"}, headers=handyman(worker)
    )
    offer = resp.json()

    resp = await client.post(f"/offers/{offer['id']}/accept", headers=customer(cust))
    assert resp.status_code == 200
    assert Decimal(resp.json()["project"]["agreedBudget"]) == Decimal("200")


# ---------------------------------------------------------------------------
# Rejection and withdrawal
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_reject_last_offer_reopens_project(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker)

    resp = await client.post(f"/offers/{offer['id']}/reject", json={"reason": "Too pricey"}, headers=customer(cust))
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "rejected"
    assert data["rejectionReason"] == "Too pricey"
    assert await _project_status(client, project["id"], cust) == "open"


@pytest.mark.asyncio
async def test_cannot_reject_own_offer(client: AsyncClient) -> None:
    project = await create_project(client, uuid.uuid4())
    worker = uuid.uuid4()
    offer = await submit_offer(client, project["id"], worker)
    resp = await client.post(f"/offers/{offer['id']}/reject", headers=handyman(worker))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_withdraw_does_not_cascade(client: AsyncClient) -> None:
    cust, worker_a, worker_b = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer_a = await submit_offer(client, project["id"], worker_a, amount="90.00")
    offer_b = await submit_offer(client, project["id"], worker_b, amount="95.00")

    resp = await client.post(f"/offers/{offer_a['id']}/withdraw", headers=handyman(worker_a))
    assert resp.status_code == 200
    assert resp.json()["status"] == "withdrawn"
    assert resp.json()["withdrawnAt"] is not None

    resp = await client.get(f"/offers/{offer_b['id']}", headers=customer(cust))
    assert resp.json()["status"] == "pending"
    assert await _project_status(client, project["id"], cust) == "has_offers"


@pytest.mark.asyncio
async def test_withdraw_last_offer_reopens_project(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker)
    resp = await client.post(f"/offers/{offer['id']}/withdraw", headers=handyman(worker))
    assert resp.status_code == 200
    assert await _project_status(client, project["id"], cust) == "open"

    # The handyman can bid again once the old offer is gone
    again = await submit_offer(client, project["id"], worker, amount="85.00")
    assert again["status"] == "pending"


@pytest.mark.asyncio
async def test_withdraw_accepted_offer_fails(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker)
    await client.post(f"/offers/{offer['id']}/accept", headers=customer(cust))

    resp = await client.post(f"/offers/{offer['id']}/withdraw", headers=handyman(worker))
    assert resp.status_code == 409
    assert resp.json()["detail"] == f"Offer {offer['id']} is accepted, not pending"
    assert await _project_status(client, project["id"], cust) == "agreed_scheduled"


@pytest.mark.asyncio
async def test_customer_cannot_withdraw_handyman_offer(client: AsyncClient) -> None:
    cust = uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], uuid.uuid4())
    resp = await client.post(f"/offers/{offer['id']}/withdraw", headers=customer(cust))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_handyman_cannot_withdraw_customer_counter(client: AsyncClient) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer = await submit_offer(client, project["id"], worker)
    result = await _counter(client, offer["id"], customer(cust), "80.00")

    resp = await client.post(f"/offers/{result['counter']['id']}/withdraw", headers=handyman(worker))
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_handyman_sees_only_own_offers(client: AsyncClient) -> None:
    cust, worker_a, worker_b = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    await submit_offer(client, project["id"], worker_a, amount="90.00")
    await submit_offer(client, project["id"], worker_b, amount="95.00")

    resp = await client.get(f"/projects/{project['id']}/offers", headers=customer(cust))
    assert len(resp.json()) == 2

    resp = await client.get(f"/projects/{project['id']}/offers", headers=handyman(worker_a))
    offers = resp.json()
    assert len(offers) == 1
    assert offers[0]["handymanId"] == str(worker_a)


@pytest.mark.asyncio
async def test_other_customer_cannot_list_offers(client: AsyncClient) -> None:
    project = await create_project(client, uuid.uuid4())
    await submit_offer(client, project["id"], uuid.uuid4())
    resp = await client.get(f"/projects/{project['id']}/offers", headers=customer(uuid.uuid4()))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_outsider_cannot_read_offer(client: AsyncClient) -> None:
    project = await create_project(client, uuid.uuid4())
    offer = await submit_offer(client, project["id"], uuid.uuid4())
    resp = await client.get(f"/offers/{offer['id']}", headers=handyman(uuid.uuid4()))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_unknown_offer_404(client: AsyncClient) -> None:
    resp = await client.get(f"/offers/{uuid.uuid4()}", headers=customer(uuid.uuid4()))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_negotiation_history(client: AsyncClient) -> None:
    cust, worker_a, worker_b = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer_a = await submit_offer(client, project["id"], worker_a, amount="100.00")
    await submit_offer(client, project["id"], worker_b, amount="95.00")
    first = await _counter(client, offer_a["id"], customer(cust), "80.00")
    second = await _counter(client, first["counter"]["id"], handyman(worker_a), "90.00")
    await client.post(f"/offers/{second['counter']['id']}/accept", headers=customer(cust))

    resp = await client.get(f"/projects/{project['id']}/negotiation-history", headers=customer(cust))
    assert resp.status_code == 200
    history = resp.json()
    assert history["projectId"] == project["id"]
    assert history["totalOffers"] == 4
    assert history["acceptedOffers"] == 1
    assert history["activeNegotiations"] == 0

    chains = {c["handymanId"]: c for c in history["negotiationChains"]}
    chain_a = chains[str(worker_a)]
    assert chain_a["id"] == offer_a["id"]
    assert chain_a["negotiationRounds"] == 3
    assert chain_a["status"] == "accepted"
    assert Decimal(chain_a["finalAmount"]) == Decimal("90")
    assert [o["negotiationRound"] for o in chain_a["offers"]] == [1, 2, 3]

    chain_b = chains[str(worker_b)]
    assert chain_b["negotiationRounds"] == 1
    assert chain_b["status"] == "rejected"


@pytest.mark.asyncio
async def test_negotiation_history_for_handyman_is_own_chain(client: AsyncClient) -> None:
    cust, worker_a, worker_b = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    await submit_offer(client, project["id"], worker_a, amount="100.00")
    await submit_offer(client, project["id"], worker_b, amount="95.00")

    resp = await client.get(f"/projects/{project['id']}/negotiation-history", headers=handyman(worker_b))
    history = resp.json()
    assert history["totalOffers"] == 1
    assert history["activeNegotiations"] == 1
    assert history["negotiationChains"][0]["handymanId"] == str(worker_b)


@pytest.mark.asyncio
async def test_offer_stats(client: AsyncClient) -> None:
    cust, worker_a, worker_b = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    offer_a = await submit_offer(client, project["id"], worker_a, amount="90.00")
    await submit_offer(client, project["id"], worker_b, amount="95.00")
    await client.post(f"/offers/{offer_a['id']}/accept", headers=customer(cust))

    other = await create_project(client, cust, title="Second job")
    await submit_offer(client, other["id"], worker_b, amount="40.00")

    resp = await client.get("/offers/stats", headers=customer(cust))
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["total"] == 3
    assert stats["accepted"] == 1
    assert stats["rejected"] == 1
    assert stats["pending"] == 1
    assert stats["activeNegotiations"] == 1
    assert Decimal(stats["averageAmount"]) == Decimal("75.00")

    resp = await client.get("/offers/stats", headers=handyman(worker_a))
    stats = resp.json()
    assert stats["total"] == 1
    assert stats["acceptanceRate"] == 100.0
    assert stats["activeNegotiations"] == 0


# ---------------------------------------------------------------------------
# Chain integrity
# ---------------------------------------------------------------------------


def _chain_offer(round_: int, parent: Offer | None = None) -> Offer:
    offer = Offer(
        offer_id=uuid.uuid4(),
        project_id=uuid.uuid4(),
        handyman_id=uuid.uuid4(),
        customer_id=uuid.uuid4(),
        proposed_by=OfferParty.HANDYMAN,
        amount=Decimal("100"),
        is_counter_offer=parent is not None,
        parent_offer_id=parent.offer_id if parent else None,
        counter_offer_id=None,
        negotiation_round=round_,
        status=OfferStatus.PENDING,
    )
    if parent is not None:
        parent.counter_offer_id = offer.offer_id
    return offer


def test_chain_with_non_increasing_round_is_corrupt() -> None:
    root = _chain_offer(1)
    first = _chain_offer(2, parent=root)
    stale = _chain_offer(2, parent=first)

    with pytest.raises(NegotiationChainCorrupt) as exc_info:
        build_chains([root, first, stale])
    assert exc_info.value.status_code == 500
    assert exc_info.value.offer_id == stale.offer_id


def test_chain_with_cycle_is_corrupt() -> None:
    root = _chain_offer(1)
    first = _chain_offer(2, parent=root)
    second = _chain_offer(3, parent=first)
    second.counter_offer_id = first.offer_id

    with pytest.raises(NegotiationChainCorrupt) as exc_info:
        build_chains([root, first, second])
    assert exc_info.value.offer_id == first.offer_id


# ---------------------------------------------------------------------------
# Concurrent writers
# ---------------------------------------------------------------------------


async def _stored_offers(engine: AsyncEngine, project_id: str) -> list[Offer]:
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as db:
        result = await db.execute(select(Offer).where(Offer.project_id == uuid.UUID(project_id)))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_accept_losing_race_to_other_accept_is_conflict(
    client: AsyncClient, db_session: AsyncSession, db_engine: AsyncEngine
) -> None:
    cust = uuid.uuid4()
    project = await create_project(client, cust)
    winner = await submit_offer(client, project["id"], uuid.uuid4(), amount="90.00")
    loser = await submit_offer(client, project["id"], uuid.uuid4(), amount="95.00")

    # Another request accepted the winner after this one read its state
    await db_session.execute(
        update(Offer)
        .where(Offer.offer_id == uuid.UUID(winner["id"]))
        .values(status=OfferStatus.ACCEPTED)
    )
    await db_session.commit()

    resp = await client.post(f"/offers/{loser['id']}/accept", headers=customer(cust))
    assert resp.status_code == 409

    offers = await _stored_offers(db_engine, project["id"])
    accepted = [o for o in offers if o.status is OfferStatus.ACCEPTED]
    assert [str(o.offer_id) for o in accepted] == [winner["id"]]
    assert {str(o.offer_id): o.status for o in offers}[loser["id"]] is OfferStatus.PENDING


@pytest.mark.asyncio
async def test_counter_losing_race_to_other_counter_is_conflict(
    client: AsyncClient, db_session: AsyncSession, db_engine: AsyncEngine
) -> None:
    cust, worker = uuid.uuid4(), uuid.uuid4()
    project = await create_project(client, cust)
    original = await submit_offer(client, project["id"], worker, amount="100.00")

    # Another request inserted its counter but has not yet marked the original
    db_session.add(Offer(
        offer_id=uuid.uuid4(),
        project_id=uuid.UUID(project["id"]),
        handyman_id=worker,
        customer_id=cust,
        proposed_by=OfferParty.CUSTOMER,
        amount=Decimal("85.00"),
        is_counter_offer=True,
        parent_offer_id=uuid.UUID(original["id"]),
        negotiation_round=2,
        status=OfferStatus.PENDING,
    ))
    await db_session.commit()

    resp = await client.post(
        f"/offers/{original['id']}/counter", json={"amount": "80.00"}, headers=customer(cust)
    )
    assert resp.status_code == 409

    offers = await _stored_offers(db_engine, project["id"])
    children = [o for o in offers if o.parent_offer_id == uuid.UUID(original["id"])]
    assert len(children) == 1
    assert children[0].amount == Decimal("85.00")
    assert len(offers) == 2
    assert await _project_status(client, project["id"], cust) == "has_offers"
