"""Tests for the conditional writes in the record store."""

import asyncio
from datetime import UTC, datetime

import pytest

from lifeline.errors import ConcurrentConflict
from lifeline.models.emergency import Emergency, EmergencyLocation, EmergencyStatus, TimelineEntry
from lifeline.models.fleet import AmbulanceStatus
from lifeline.services.store import DispatchStore
from tests.fakes import AMB_1, AMB_2, AMB_3, CENTRAL, NEAR_CENTRAL, NORTH, PATIENT_CONTACT, PATIENT_ID


def _emergency(emergency_id: str = "e-1", hospital_id: str = CENTRAL.id) -> Emergency:
    now = datetime.now(UTC)
    return Emergency(
        id=emergency_id,
        patient_id=PATIENT_ID,
        location=EmergencyLocation(coordinates=NEAR_CENTRAL, address="12 MG Road"),
        hospital_id=hospital_id,
        timeline=[TimelineEntry(status=EmergencyStatus.PENDING, timestamp=now, notes="Emergency request created")],
        created_at=now,
        updated_at=now,
    )


async def test_emergency_round_trip_keeps_timeline_order(fleet):
    store = fleet.store
    emergency = _emergency()
    await store.create_emergency(emergency)
    await store.append_timeline(
        emergency.id,
        TimelineEntry(status=EmergencyStatus.CANCELLED, timestamp=datetime.now(UTC), notes="second"),
    )

    stored = await store.get_emergency(emergency.id)
    assert stored.location.coordinates == NEAR_CENTRAL
    assert [e.notes for e in stored.timeline] == ["Emergency request created", "second"]
    assert stored.timeline[0].coordinates is None
    assert await store.get_emergency("missing") is None


async def test_claim_available_returns_none_when_pool_empty(fleet):
    await fleet.store.create_emergency(_emergency("e-1", NORTH.id))
    await fleet.store.create_emergency(_emergency("e-2", NORTH.id))

    claimed = await fleet.store.claim_available_ambulance(NORTH.id, "e-1", near=NEAR_CENTRAL)
    assert claimed.id == AMB_3.id
    assert await fleet.store.claim_available_ambulance(NORTH.id, "e-2", near=NEAR_CENTRAL) is None


async def test_claim_specific_ambulance(fleet):
    store = fleet.store
    assert await store.claim_ambulance(AMB_1.id, "e-1")
    # Re-claim by the holder succeeds, anyone else loses
    assert await store.claim_ambulance(AMB_1.id, "e-1")
    assert not await store.claim_ambulance(AMB_1.id, "e-2")

    ambulance = await store.get_ambulance(AMB_1.id)
    assert ambulance.status == AmbulanceStatus.ON_DUTY
    assert ambulance.current_emergency_id == "e-1"


async def test_release_only_by_holder(fleet):
    store = fleet.store
    await store.claim_ambulance(AMB_1.id, "e-1")

    assert not await store.release_ambulance(AMB_1.id, "e-2")
    assert (await store.get_ambulance(AMB_1.id)).status == AmbulanceStatus.ON_DUTY

    assert await store.release_ambulance(AMB_1.id, "e-1")
    ambulance = await store.get_ambulance(AMB_1.id)
    assert ambulance.status == AmbulanceStatus.AVAILABLE
    assert ambulance.current_emergency_id is None


async def test_save_with_stale_version_conflicts(fleet):
    store = fleet.store
    emergency = _emergency()
    await store.create_emergency(emergency)

    saved = await store.save_emergency(
        emergency.model_copy(update={"status": EmergencyStatus.CANCELLED}), expected_version=0
    )
    assert saved.version == 1

    with pytest.raises(ConcurrentConflict):
        await store.save_emergency(
            emergency.model_copy(update={"status": EmergencyStatus.DISPATCHED}), expected_version=0
        )
    assert (await store.get_emergency(emergency.id)).status == EmergencyStatus.CANCELLED


async def test_list_emergencies_by_hospital_and_patient(fleet):
    store = fleet.store
    await store.create_emergency(_emergency("e-1"))
    await store.create_emergency(_emergency("e-2", NORTH.id))

    assert [e.id for e in await store.list_hospital_emergencies(CENTRAL.id)] == ["e-1"]
    assert await store.list_hospital_emergencies(CENTRAL.id, "Dispatched") == []
    assert {e.id for e in await store.list_patient_emergencies(PATIENT_ID)} == {"e-1", "e-2"}


async def test_list_hospital_ambulances(fleet):
    ambulances = await fleet.store.list_hospital_ambulances(CENTRAL.id)
    assert [a.id for a in ambulances] == ["amb-1", "amb-2"]
    assert await fleet.store.list_hospital_ambulances(CENTRAL.id, AmbulanceStatus.ON_DUTY) == []


async def test_emergency_contacts(fleet):
    contacts = await fleet.store.get_emergency_contacts(PATIENT_ID)
    assert contacts == [PATIENT_CONTACT]
    assert await fleet.store.get_emergency_contacts("nobody") == []


async def _stores_on_separate_connections(open_file_db, count: int) -> list[DispatchStore]:
    stores = [DispatchStore(await open_file_db()) for _ in range(count)]
    await stores[0].insert_hospital(CENTRAL)
    await stores[0].insert_ambulance(AMB_1)
    await stores[0].insert_ambulance(AMB_2)
    await stores[0].db.execute("UPDATE ambulances SET status = 'Unavailable' WHERE id = ?", (AMB_2.id,))
    return stores


async def test_claim_available_across_connections_has_one_winner(open_file_db):
    stores = await _stores_on_separate_connections(open_file_db, 6)

    async def claim(store: DispatchStore, emergency_id: str):
        async with store.db.transaction():
            return await store.claim_available_ambulance(CENTRAL.id, emergency_id, near=NEAR_CENTRAL)

    results = await asyncio.gather(*(claim(store, f"e-{i}") for i, store in enumerate(stores)))
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].id == AMB_1.id

    ambulance = await stores[0].get_ambulance(AMB_1.id)
    assert ambulance.status == AmbulanceStatus.ON_DUTY
    assert ambulance.current_emergency_id == winners[0].current_emergency_id


async def test_claim_specific_across_connections_has_one_winner(open_file_db):
    stores = await _stores_on_separate_connections(open_file_db, 6)
    await stores[0].db.execute("UPDATE ambulances SET status = 'Available' WHERE id = ?", (AMB_2.id,))

    async def claim(store: DispatchStore, emergency_id: str) -> bool:
        async with store.db.transaction():
            return await store.claim_ambulance(AMB_2.id, emergency_id)

    results = await asyncio.gather(*(claim(store, f"e-{i}") for i, store in enumerate(stores)))
    assert results.count(True) == 1

    ambulance = await stores[0].get_ambulance(AMB_2.id)
    assert ambulance.current_emergency_id == f"e-{results.index(True)}"
