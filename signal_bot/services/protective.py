"""Protective order state attached to a trade.

A trade's stop-loss and take-profit legs are each described by one of:

* ``None`` — nothing on the exchange; the monitors poll price themselves.
* ``SingleOrder`` — one exchange order id (stop-market or take-profit-market).
* ``Ladder`` — partial take-profit orders, one per configured level.
* ``PositionLevel`` — a stop/target attached to the position itself, with no
  order id to poll; the position size is watched instead.

States are persisted as small JSON documents on the trade row.
"""

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True)
class SingleOrder:
    order_id: str


@dataclass(frozen=True)
class LadderLeg:
    level: int
    order_id: str
    quantity: float
    price: float


@dataclass(frozen=True)
class Ladder:
    legs: tuple[LadderLeg, ...] = field(default_factory=tuple)

    def without(self, order_id: str) -> "Ladder":
        return Ladder(tuple(leg for leg in self.legs if leg.order_id != order_id))

    @property
    def order_ids(self) -> list[str]:
        return [leg.order_id for leg in self.legs]


@dataclass(frozen=True)
class PositionLevel:
    price: float | None = None


ProtectiveOrderState = Union[SingleOrder, Ladder, PositionLevel, None]


def dump_state(state: ProtectiveOrderState) -> dict[str, Any] | None:
    """Serialize a state for the trade's JSON column."""
    if state is None:
        return None
    if isinstance(state, SingleOrder):
        return {"kind": "single", "order_id": state.order_id}
    if isinstance(state, Ladder):
        if not state.legs:
            return None
        return {
            "kind": "ladder",
            "legs": [
                {"level": leg.level, "order_id": leg.order_id,
                 "quantity": leg.quantity, "price": leg.price}
                for leg in state.legs
            ],
        }
    if isinstance(state, PositionLevel):
        return {"kind": "position", "price": state.price}
    raise TypeError(f"Unsupported protective state: {state!r}")


def load_state(data: dict[str, Any] | None) -> ProtectiveOrderState:
    """Parse the JSON column back into a state. Unknown payloads map to None."""
    if not data:
        return None
    kind = data.get("kind")
    if kind == "single" and data.get("order_id"):
        return SingleOrder(str(data["order_id"]))
    if kind == "ladder":
        legs = tuple(
            LadderLeg(
                level=int(leg["level"]),
                order_id=str(leg["order_id"]),
                quantity=float(leg["quantity"]),
                price=float(leg["price"]),
            )
            for leg in data.get("legs") or []
        )
        return Ladder(legs) if legs else None
    if kind == "position":
        price = data.get("price")
        return PositionLevel(float(price) if price is not None else None)
    return None


def order_ids(state: ProtectiveOrderState) -> list[str]:
    """Exchange order ids referenced by a state (none for position-level stops)."""
    if isinstance(state, SingleOrder):
        return [state.order_id]
    if isinstance(state, Ladder):
        return state.order_ids
    return []
