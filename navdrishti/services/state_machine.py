"""
Order state machine: the transition table and one authorization guard per
transition, kept in a single place instead of scattered across routes.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional

from navdrishti.errors import AuthorizationError, InvalidStateTransition
from navdrishti.models import Order, OrderStatus


@dataclass(frozen=True)
class Actor:
    """Who is driving a transition.  ``None`` in place of an Actor means the system."""
    id: int
    role: str = "individual"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


@dataclass(frozen=True)
class Transition:
    name: str
    sources: FrozenSet[OrderStatus]
    target: OrderStatus


def _t(name: str, target: OrderStatus, *sources: OrderStatus) -> Transition:
    return Transition(name=name, sources=frozenset(sources), target=target)


S = OrderStatus

TRANSITIONS: Dict[str, Transition] = {
    t.name: t
    for t in (
        _t("await_payment", S.PAYMENT_PENDING, S.PENDING),
        _t("confirm", S.CONFIRMED, S.PENDING, S.PAYMENT_PENDING),
        _t("process", S.PROCESSING, S.CONFIRMED),
        _t("ship", S.SHIPPED, S.CONFIRMED, S.PROCESSING),
        _t("deliver", S.DELIVERED, S.SHIPPED),
        _t("cancel", S.CANCELLED, S.PENDING, S.PAYMENT_PENDING, S.CONFIRMED),
        _t("refund", S.REFUNDED, S.CONFIRMED, S.PROCESSING, S.SHIPPED),
    )
}

# Statuses an order passes through only after its payment was confirmed
POST_CONFIRMATION: FrozenSet[OrderStatus] = frozenset(
    {S.CONFIRMED, S.PROCESSING, S.SHIPPED, S.DELIVERED}
)


# ── Guards ───────────────────────────────────────────────────────────────────

Guard = Callable[[Order, Optional[Actor]], bool]


def _system(order: Order, actor: Optional[Actor]) -> bool:
    return actor is None


def _buyer(order: Order, actor: Optional[Actor]) -> bool:
    return actor is not None and actor.id == order.buyer_id


def _seller(order: Order, actor: Optional[Actor]) -> bool:
    return actor is not None and actor.id == order.seller_id


def _admin(order: Order, actor: Optional[Actor]) -> bool:
    return actor is not None and actor.is_admin


def _any_of(*guards: Guard) -> Guard:
    def check(order: Order, actor: Optional[Actor]) -> bool:
        return any(g(order, actor) for g in guards)
    return check


GUARDS: Dict[str, Guard] = {
    "await_payment": _any_of(_system, _buyer),
    "confirm": _any_of(_system, _buyer, _admin),
    "process": _any_of(_seller, _admin),
    "ship": _any_of(_seller, _admin),
    "deliver": _any_of(_system, _seller, _admin),
    "cancel": _any_of(_system, _buyer, _seller, _admin),
    "refund": _seller,
}


def transition(name: str) -> Transition:
    return TRANSITIONS[name]


def authorize(name: str, order: Order, actor: Optional[Actor]) -> None:
    if not GUARDS[name](order, actor):
        raise AuthorizationError(f"Not allowed to {name.replace('_', ' ')} this order")


def check_legal(name: str, current: OrderStatus) -> Transition:
    t = TRANSITIONS[name]
    if current not in t.sources:
        raise InvalidStateTransition(current=current.value, target=t.target.value)
    return t
