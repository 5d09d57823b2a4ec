"""
Persistence collaborator contract.

The dialer never owns storage: campaigns, contacts, calls, turns and
appointments are kept by whatever implements `CampaignStore`. The
in-memory implementation backs tests and local runs and can be seeded
from a YAML file.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import yaml

from ..logging_config import get_logger
from .models import (
    Appointment,
    Call,
    CallStatus,
    Campaign,
    CampaignStats,
    CampaignStatus,
    Contact,
    ContactStatus,
    ConversationTurn,
    new_id,
)

logger = get_logger(__name__)


class StoreError(Exception):
    """Raised by store implementations for unknown records or backend failures."""


class CampaignStore(ABC):
    # Campaigns --------------------------------------------------------
    @abstractmethod
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]: ...

    @abstractmethod
    async def list_campaigns(self, status: Optional[CampaignStatus] = None) -> List[Campaign]: ...

    @abstractmethod
    async def update_campaign_status(self, campaign_id: str, status: CampaignStatus) -> None: ...

    @abstractmethod
    async def update_campaign_stats(self, campaign_id: str) -> CampaignStats: ...

    # Contacts ---------------------------------------------------------
    @abstractmethod
    async def get_pending_contacts(self, campaign_id: str, limit: Optional[int] = 1) -> List[Contact]:
        """Pending contacts in insertion order; `limit=None` returns all of them."""

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Optional[Contact]: ...

    @abstractmethod
    async def update_contact_status(self, contact_id: str, status: ContactStatus) -> None: ...

    @abstractmethod
    async def increment_call_attempts(self, contact_id: str) -> int: ...

    # Calls ------------------------------------------------------------
    @abstractmethod
    async def create_call(self, contact: Contact, channel_id: Optional[str], bridge_id: Optional[str]) -> Call: ...

    @abstractmethod
    async def update_call_status(self, call_id: str, status: CallStatus, end_time: Optional[datetime] = None) -> None: ...

    @abstractmethod
    async def set_call_recording(self, call_id: str, path: str) -> None: ...

    # Turns and appointments ------------------------------------------
    @abstractmethod
    async def add_turn(self, call_id: str, turn: ConversationTurn) -> None: ...

    @abstractmethod
    async def get_turns(self, call_id: str) -> List[ConversationTurn]: ...

    @abstractmethod
    async def create_appointment(self, appointment: Appointment) -> str: ...

    @abstractmethod
    async def get_setting(self, key: str) -> Optional[str]: ...


class InMemoryCampaignStore(CampaignStore):
    """Dict-backed store. Methods never await internally, so each call is atomic."""

    def __init__(self):
        self.campaigns: Dict[str, Campaign] = {}
        self.contacts: Dict[str, Contact] = {}
        self.calls: Dict[str, Call] = {}
        self.turns: Dict[str, List[ConversationTurn]] = {}
        self.appointments: Dict[str, Appointment] = {}
        self.settings: Dict[str, str] = {}

    # Seeding ----------------------------------------------------------
    def add_campaign(self, name: str, contacts: List[Dict[str, Any]], campaign_id: Optional[str] = None) -> Campaign:
        campaign = Campaign(id=campaign_id or new_id(), name=name)
        self.campaigns[campaign.id] = campaign
        for row in contacts:
            contact = Contact(id=str(row.get("id") or new_id()), campaign_id=campaign.id, **{
                k: (str(v) if v is not None else None)
                for k, v in row.items()
                if k in ("phone_number", "name", "location", "size", "price", "extra_info", "advantages")
            })
            self.contacts[contact.id] = contact
            campaign.contact_ids.append(contact.id)
        campaign.stats.pending_calls = len(campaign.contact_ids)
        return campaign

    def load_seed(self, path: str) -> List[Campaign]:
        """Load campaigns from a YAML file: {campaigns: [{id, name, contacts: [...]}], settings: {...}}."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        loaded = [
            self.add_campaign(entry.get("name", ""), entry.get("contacts") or [], campaign_id=entry.get("id"))
            for entry in data.get("campaigns") or []
        ]
        self.settings.update({str(k): str(v) for k, v in (data.get("settings") or {}).items()})
        logger.info("Store seeded", path=path, campaigns=len(loaded))
        return loaded

    # Campaigns --------------------------------------------------------
    async def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        return self.campaigns.get(campaign_id)

    async def list_campaigns(self, status: Optional[CampaignStatus] = None) -> List[Campaign]:
        return [c for c in self.campaigns.values() if status is None or c.status == status]

    async def update_campaign_status(self, campaign_id: str, status: CampaignStatus) -> None:
        self._campaign(campaign_id).status = status

    async def update_campaign_stats(self, campaign_id: str) -> CampaignStats:
        campaign = self._campaign(campaign_id)
        contacts = [self.contacts[cid] for cid in campaign.contact_ids]
        campaign.stats = CampaignStats(
            completed_calls=sum(1 for c in contacts if c.status == ContactStatus.COMPLETED),
            pending_calls=sum(1 for c in contacts if c.status == ContactStatus.PENDING),
            failed_calls=sum(1 for c in contacts if c.status in (ContactStatus.FAILED, ContactStatus.NO_ANSWER)),
            appointments=sum(1 for a in self.appointments.values() if a.campaign_id == campaign_id),
        )
        return campaign.stats

    # Contacts ---------------------------------------------------------
    async def get_pending_contacts(self, campaign_id: str, limit: Optional[int] = 1) -> List[Contact]:
        campaign = self._campaign(campaign_id)
        pending = (self.contacts[cid] for cid in campaign.contact_ids)
        return [c for c in pending if c.status == ContactStatus.PENDING][:limit]

    async def get_contact(self, contact_id: str) -> Optional[Contact]:
        return self.contacts.get(contact_id)

    async def update_contact_status(self, contact_id: str, status: ContactStatus) -> None:
        self._contact(contact_id).status = status

    async def increment_call_attempts(self, contact_id: str) -> int:
        contact = self._contact(contact_id)
        contact.call_attempts += 1
        return contact.call_attempts

    # Calls ------------------------------------------------------------
    async def create_call(self, contact: Contact, channel_id: Optional[str], bridge_id: Optional[str]) -> Call:
        call = Call(
            id=new_id(),
            contact_id=contact.id,
            campaign_id=contact.campaign_id,
            channel_id=channel_id,
            bridge_id=bridge_id,
        )
        self.calls[call.id] = call
        self.turns[call.id] = []
        return call

    async def update_call_status(self, call_id: str, status: CallStatus, end_time: Optional[datetime] = None) -> None:
        call = self._call(call_id)
        call.status = status
        if end_time is not None:
            call.end_time = end_time

    async def set_call_recording(self, call_id: str, path: str) -> None:
        self._call(call_id).recording_path = path

    # Turns and appointments ------------------------------------------
    async def add_turn(self, call_id: str, turn: ConversationTurn) -> None:
        self._call(call_id)
        self.turns.setdefault(call_id, []).append(turn)

    async def get_turns(self, call_id: str) -> List[ConversationTurn]:
        return list(self.turns.get(call_id, []))

    async def create_appointment(self, appointment: Appointment) -> str:
        self.appointments[appointment.id] = appointment
        return appointment.id

    async def get_setting(self, key: str) -> Optional[str]:
        return self.settings.get(key)

    # Helpers ----------------------------------------------------------
    def _campaign(self, campaign_id: str) -> Campaign:
        try:
            return self.campaigns[campaign_id]
        except KeyError:
            raise StoreError(f"unknown campaign {campaign_id}") from None

    def _contact(self, contact_id: str) -> Contact:
        try:
            return self.contacts[contact_id]
        except KeyError:
            raise StoreError(f"unknown contact {contact_id}") from None

    def _call(self, call_id: str) -> Call:
        try:
            return self.calls[call_id]
        except KeyError:
            raise StoreError(f"unknown call {call_id}") from None
