"""Tests for the in-memory campaign store."""

import pytest

from voicebot.core.models import Appointment, CallStatus, CampaignStatus, ContactStatus, ConversationTurn, Speaker
from voicebot.core.store import InMemoryCampaignStore, StoreError


def _store_with_campaign(n=3):
    store = InMemoryCampaignStore()
    campaign = store.add_campaign(
        "Naves Querétaro",
        [{"phone_number": f"44200000{i}", "name": f"Cliente {i}", "price": 3500000} for i in range(n)],
        campaign_id="camp",
    )
    return store, campaign


@pytest.mark.asyncio
async def test_pending_contacts_in_insertion_order():
    store, campaign = _store_with_campaign()
    first = campaign.contact_ids[0]

    pending = await store.get_pending_contacts("camp", limit=2)
    assert [c.id for c in pending] == campaign.contact_ids[:2]

    await store.update_contact_status(first, ContactStatus.CALLING)
    pending = await store.get_pending_contacts("camp", limit=5)
    assert [c.id for c in pending] == campaign.contact_ids[1:]


@pytest.mark.asyncio
async def test_contact_fields_stringified():
    store, campaign = _store_with_campaign(1)

    contact = await store.get_contact(campaign.contact_ids[0])

    assert contact.price == "3500000"
    assert contact.talking_points() == {"name": "Cliente 0", "price": "3500000"}


@pytest.mark.asyncio
async def test_stats_count_no_answer_as_failed():
    store, campaign = _store_with_campaign(3)
    a, b, _ = campaign.contact_ids
    await store.update_contact_status(a, ContactStatus.COMPLETED)
    await store.update_contact_status(b, ContactStatus.NO_ANSWER)
    await store.create_appointment(Appointment(contact_id=a, call_id="x", campaign_id="camp", scheduled_at=None))

    stats = await store.update_campaign_stats("camp")

    assert stats.completed_calls == 1
    assert stats.failed_calls == 1
    assert stats.pending_calls == 1
    assert stats.appointments == 1


@pytest.mark.asyncio
async def test_calls_and_turns():
    store, campaign = _store_with_campaign(1)
    contact = await store.get_contact(campaign.contact_ids[0])

    call = await store.create_call(contact, "chan-1", "bridge-1")
    await store.update_call_status(call.id, CallStatus.ANSWERED)
    await store.add_turn(call.id, ConversationTurn(sequence=1, speaker=Speaker.BOT, text="Hola"))

    assert store.calls[call.id].status == CallStatus.ANSWERED
    assert [t.text for t in await store.get_turns(call.id)] == ["Hola"]


@pytest.mark.asyncio
async def test_unknown_records_raise_store_error():
    store = InMemoryCampaignStore()

    with pytest.raises(StoreError):
        await store.update_campaign_status("nope", CampaignStatus.RUNNING)
    with pytest.raises(StoreError):
        await store.add_turn("nope", ConversationTurn(sequence=1, speaker=Speaker.CLIENT, text="?"))


def test_load_seed(tmp_path):
    seed = tmp_path / "seed.yaml"
    seed.write_text(
        """
campaigns:
  - id: spring
    name: Primavera
    contacts:
      - phone_number: "4421110000"
        name: Ana
        location: El Marqués
settings:
  system_prompt: "Eres {agent}."
"""
    )
    store = InMemoryCampaignStore()

    loaded = store.load_seed(str(seed))

    assert [c.id for c in loaded] == ["spring"]
    assert store.settings["system_prompt"] == "Eres {agent}."
    contact = store.contacts[loaded[0].contact_ids[0]]
    assert contact.location == "El Marqués"
