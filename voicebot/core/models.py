"""
Core data models for the voicebot dialer.

Campaign, Contact, Call, ConversationTurn and Appointment mirror the records
kept by the persistence collaborator. CallHandler is transient and lives
only inside the dispatcher's ledger.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

if TYPE_CHECKING:
    from .timers import ScheduledTask


def new_id() -> str:
    return uuid.uuid4().hex


class CampaignStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


class ContactStatus(str, Enum):
    PENDING = "pending"
    CALLING = "calling"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"


class CallStatus(str, Enum):
    RINGING = "ringing"
    ANSWERED = "answered"
    COMPLETED = "completed"
    FAILED = "failed"


class Speaker(str, Enum):
    BOT = "bot"
    CLIENT = "client"


@dataclass
class CampaignStats:
    completed_calls: int = 0
    pending_calls: int = 0
    failed_calls: int = 0
    appointments: int = 0


@dataclass
class Campaign:
    id: str
    name: str
    status: CampaignStatus = CampaignStatus.PENDING
    # Insertion order is dispatch order
    contact_ids: List[str] = field(default_factory=list)
    stats: CampaignStats = field(default_factory=CampaignStats)


@dataclass
class Contact:
    """A dial target plus the talking points used to pitch to it."""
    id: str
    campaign_id: str
    phone_number: str
    name: str = ""
    location: Optional[str] = None
    size: Optional[str] = None
    price: Optional[str] = None
    extra_info: Optional[str] = None
    advantages: Optional[str] = None
    status: ContactStatus = ContactStatus.PENDING
    call_attempts: int = 0

    def talking_points(self) -> Dict[str, Any]:
        points = {
            "name": self.name,
            "location": self.location,
            "size": self.size,
            "price": self.price,
            "extra_info": self.extra_info,
            "advantages": self.advantages,
        }
        return {k: v for k, v in points.items() if v}


@dataclass
class Call:
    id: str
    contact_id: str
    campaign_id: str
    channel_id: Optional[str] = None
    bridge_id: Optional[str] = None
    status: CallStatus = CallStatus.RINGING
    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    recording_path: Optional[str] = None


@dataclass
class CallHandler:
    """In-flight origination bookkeeping for one dialed number."""
    phone_number: str
    contact: Contact
    campaign_id: str
    channel_id: Optional[str] = None
    start_time: float = field(default_factory=time.monotonic)
    answered: bool = False
    timeout: Optional["ScheduledTask"] = None


@dataclass
class ConversationTurn:
    sequence: int
    speaker: Speaker
    text: str
    audio_ref: Optional[str] = None
    latency_ms: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class Appointment:
    contact_id: str
    call_id: str
    campaign_id: str
    scheduled_at: Optional[datetime]
    interest_level: str = "medium"
    notes: str = ""
    id: str = field(default_factory=new_id)
