"""
Order Service: checkout reservation state

The stock hold an order holds across the checkout saga is a tagged
variant rather than a set of booleans:

    (none) ──reserve──▶ Reserved ──payment ok──▶ Confirmed
       │                   │
       │                   └──payment failed / abort──▶ Released
       └──reserve failed──▶ Failed

``advance`` is the only way to move between states; any other move is a
``Conflict``. The state is persisted on ``orders.reservation_state`` as
a small JSON object.
"""

from dataclasses import asdict, dataclass, field
from typing import ClassVar, Union

from services.common.errors import Conflict


@dataclass(frozen=True)
class Reserved:
    tag: ClassVar[str] = "RESERVED"
    lines: tuple = field(default_factory=tuple)


@dataclass(frozen=True)
class Confirmed:
    tag: ClassVar[str] = "CONFIRMED"
    transaction_id: str | None = None


@dataclass(frozen=True)
class Released:
    tag: ClassVar[str] = "RELEASED"
    reason: str | None = None


@dataclass(frozen=True)
class Failed:
    tag: ClassVar[str] = "FAILED"
    reason: str | None = None


ReservationState = Union[Reserved, Confirmed, Released, Failed]

_VARIANTS = {cls.tag: cls for cls in (Reserved, Confirmed, Released, Failed)}

_ALLOWED = {
    None: (Reserved, Failed),
    Reserved: (Confirmed, Released),
    Confirmed: (),
    Released: (),
    Failed: (),
}


def advance(current: ReservationState | None, target: ReservationState) -> ReservationState:
    source = type(current) if current is not None else None
    if not isinstance(target, _ALLOWED[source]):
        raise Conflict(
            "Illegal reservation state change",
            data={
                "from": current.tag if current is not None else None,
                "to": target.tag,
            },
        )
    return target


def to_dict(state: ReservationState | None) -> dict | None:
    if state is None:
        return None
    body = asdict(state)
    if "lines" in body:
        body["lines"] = [list(line) for line in body["lines"]]
    return {"tag": state.tag, **body}


def from_dict(data: dict | None) -> ReservationState | None:
    if not data:
        return None
    data = dict(data)
    cls = _VARIANTS[data.pop("tag")]
    if cls is Reserved:
        return Reserved(lines=tuple(tuple(line) for line in data.get("lines", [])))
    return cls(**data)
