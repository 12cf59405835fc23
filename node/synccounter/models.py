from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """
    Snake_case in Python, camelCase on the wire (dailyGoal, lastUpdated, ...).
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class DayHistory(WireModel):
    """
    One calendar day of a counter:
    users[user] = contributions that day, total = sum(users), day = weekday label
    """
    users: Dict[str, int] = Field(default_factory=dict)
    total: int = 0
    day: Optional[str] = None


class Counter(WireModel):
    id: str
    name: str
    value: int = 0
    daily_goal: Optional[int] = None
    daily_count: int = 0
    users: Dict[str, int] = Field(default_factory=dict)
    history: Dict[str, DayHistory] = Field(default_factory=dict)
    last_updated: int = 0


class ChangeType(str, Enum):
    INCREMENT = "increment"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PendingChange(WireModel):
    """
    A local mutation the server has not confirmed yet.
    `id` is the target counter id, not an id of the change itself.
    """
    id: str
    type: ChangeType
    timestamp: int
    # increment payload
    delta: Optional[int] = None
    previous_value: Optional[int] = None
    new_value: Optional[int] = None
    acting_user: Optional[str] = None
    day_key: Optional[str] = None
    # create/update payload (name/value snapshot for delete)
    counter_data: Optional[Dict[str, Any]] = None


class PendingIncrement(WireModel):
    id: str
    counter_id: str
    acting_user: str
    day_key: str
    timestamp: int


class OfflineCounterData(WireModel):
    counters: List[Counter] = Field(default_factory=list)
    last_sync: int = 0
    last_server_sync: int = 0


# ----------- request bodies -----------

class CounterIn(WireModel):
    id: Optional[str] = None
    name: Optional[str] = Field(None, examples=["Morning laps"])
    value: int = 0
    daily_goal: Optional[int] = None


class CounterUpdateIn(WireModel):
    name: Optional[str] = None
    value: Optional[int] = None
    daily_goal: Optional[int] = None
    users: Optional[Dict[str, int]] = None
    history: Optional[Dict[str, DayHistory]] = None
    # start today over: drop today's per-user contributions
    reset_daily_count: bool = False


class IncrementIn(WireModel):
    acting_user: Optional[str] = Field(None, examples=["Alice"])
    day_key: Optional[str] = Field(None, examples=["2024-01-15"])


class IncrementGroup(WireModel):
    """Summed contributions of one (user, day) pair inside a batch."""
    acting_user: str
    day_key: Optional[str] = None
    count: int = Field(1, ge=1)


class BatchIncrementIn(WireModel):
    increments: List[IncrementGroup]


# ----------- push channel events -----------

class InitialEvent(WireModel):
    type: Literal["initial"] = "initial"
    counters: List[Counter]
    timestamp: int


class CounterCreatedEvent(WireModel):
    type: Literal["counter_created"] = "counter_created"
    counter: Counter
    timestamp: int


class CounterUpdatedEvent(WireModel):
    type: Literal["counter_updated"] = "counter_updated"
    counter: Counter
    timestamp: int


class CounterDeletedEvent(WireModel):
    type: Literal["counter_deleted"] = "counter_deleted"
    counter_id: str
    timestamp: int


class CounterIncrementedEvent(WireModel):
    type: Literal["counter_incremented"] = "counter_incremented"
    counter: Counter
    timestamp: int


class CounterDecrementedEvent(WireModel):
    type: Literal["counter_decremented"] = "counter_decremented"
    counter: Counter
    timestamp: int


SyncEvent = Annotated[
    Union[
        InitialEvent,
        CounterCreatedEvent,
        CounterUpdatedEvent,
        CounterDeletedEvent,
        CounterIncrementedEvent,
        CounterDecrementedEvent,
    ],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(SyncEvent)


def encode_event(event: WireModel) -> str:
    """One event -> one JSON line (no trailing newline)."""
    return event.model_dump_json(by_alias=True)


def parse_event(line: Union[str, bytes]) -> Any:
    return _event_adapter.validate_json(line)
