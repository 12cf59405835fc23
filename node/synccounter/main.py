import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Response

from .config import HOST, LOG_LEVEL, PORT
from .counters import apply_increments, now_ms, reset_daily_count
from .live import broadcaster, router as live_router
from .models import (
    BatchIncrementIn,
    Counter,
    CounterCreatedEvent,
    CounterDecrementedEvent,
    CounterDeletedEvent,
    CounterIn,
    CounterIncrementedEvent,
    CounterUpdatedEvent,
    CounterUpdateIn,
    IncrementGroup,
    IncrementIn,
)
from .state import add_counter, delete_counter, get_counter, list_counters, update_counter

logging.basicConfig(
    level=LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Shutdown: end every open /sync stream
    await broadcaster.close_all()


app = FastAPI(title="Sync Counter", lifespan=lifespan)

app.include_router(live_router)


def _required_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise HTTPException(status_code=400, detail="Counter name is required")
    return name


def _placeholder(counter_id: str) -> Counter:
    """Counter created implicitly when a mutation targets an unknown id."""
    return Counter(id=counter_id, name=f"Counter {counter_id[-8:]}")


def _envelope(counter: Counter, **extra: Any) -> Dict[str, Any]:
    return {"counter": counter, "timestamp": now_ms(), **extra}


@app.get("/counters")
def get_counters():
    return {"counters": list_counters(), "timestamp": now_ms()}


@app.post("/counters", status_code=201)
async def create_counter(body: CounterIn, response: Response):
    name = _required_name(body.name)

    # replayed offline creates carry their id: answer with what we already have
    if body.id:
        existing = get_counter(body.id)
        if existing is not None:
            response.status_code = 200
            return _envelope(existing)

    counter_id = body.id or f"counter-{now_ms()}-{uuid4().hex[:6]}"
    created = add_counter(
        Counter(id=counter_id, name=name, value=body.value, daily_goal=body.daily_goal)
    )
    await broadcaster.publish(CounterCreatedEvent(counter=created, timestamp=now_ms()))
    logger.info("Created counter %s (%s)", created.id, created.name)
    return _envelope(created)


@app.put("/counters/{counter_id}")
async def edit_counter(counter_id: str, body: CounterUpdateIn):
    fields = body.model_dump(exclude_unset=True)
    reset = fields.pop("reset_daily_count", False)
    fields["name"] = _required_name(body.name)
    fields = {k: v for k, v in fields.items() if v is not None or k == "daily_goal"}

    updated = update_counter(counter_id, fields)
    if updated is not None:
        if reset:
            updated = update_counter(counter_id, {"history": reset_daily_count(updated).history})
        await broadcaster.publish(CounterUpdatedEvent(counter=updated, timestamp=now_ms()))
        return _envelope(updated)

    # edit raced ahead of the create: create it instead of failing
    logger.info("Counter %s not found on update, creating it", counter_id)
    counter = Counter(id=counter_id, **fields)
    if reset:
        reset_daily_count(counter)
    created = add_counter(counter)
    await broadcaster.publish(CounterCreatedEvent(counter=created, timestamp=now_ms()))
    return _envelope(created)


@app.delete("/counters/{counter_id}")
async def remove_counter(counter_id: str):
    deleted = delete_counter(counter_id)
    if deleted:
        await broadcaster.publish(CounterDeletedEvent(counter_id=counter_id, timestamp=now_ms()))
    return {"ok": True, "deleted": deleted, "timestamp": now_ms()}


@app.post("/counters/{counter_id}/increment")
async def increment(counter_id: str, body: Optional[IncrementIn] = None):
    counter = get_counter(counter_id)
    if counter is None:
        logger.info("Counter %s not found, creating it", counter_id)
        counter = add_counter(_placeholder(counter_id))

    if body is not None and body.acting_user:
        apply_increments(counter, [IncrementGroup(acting_user=body.acting_user, day_key=body.day_key)])
    else:
        counter.value += 1

    updated = update_counter(
        counter_id, {"value": counter.value, "users": counter.users, "history": counter.history}
    )
    await broadcaster.publish(CounterIncrementedEvent(counter=updated, timestamp=now_ms()))
    return _envelope(updated)


@app.post("/counters/{counter_id}/increment-batch")
async def increment_batch(counter_id: str, body: BatchIncrementIn):
    if not body.increments:
        raise HTTPException(status_code=400, detail="Invalid increments array")

    counter = get_counter(counter_id)
    if counter is None:
        logger.info("Counter %s not found, creating it", counter_id)
        counter = add_counter(_placeholder(counter_id))

    before = counter.value
    processed = apply_increments(counter, body.increments)

    updated = update_counter(
        counter_id, {"value": counter.value, "users": counter.users, "history": counter.history}
    )
    logger.info("Batch increment on %s: %d -> %d (+%d)", counter_id, before, updated.value, processed)
    await broadcaster.publish(CounterIncrementedEvent(counter=updated, timestamp=now_ms()))
    return _envelope(updated, processedIncrements=processed)


@app.post("/counters/{counter_id}/decrement")
async def decrement(counter_id: str):
    current = get_counter(counter_id)
    if current is None:
        raise HTTPException(status_code=404, detail="Counter not found")

    updated = update_counter(counter_id, {"value": current.value - 1})
    await broadcaster.publish(CounterDecrementedEvent(counter=updated, timestamp=now_ms()))
    return _envelope(updated)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("synccounter.main:app", host=HOST, port=PORT, log_level=LOG_LEVEL)
