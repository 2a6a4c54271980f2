"""
Capability checks.

``can_access`` is the one place where ownership and the admin override are
decided. Routes turn a denied Decision into NotFound when the caller may not
even see the resource, and into Forbidden otherwise.
"""
from dataclasses import dataclass
from enum import Enum

from errors import Forbidden, NotFound
from schemas import OrderStatus, Role


class Action(str, Enum):
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    CANCEL = "cancel"
    UPDATE_STATUS = "update_status"
    TRACK = "track"
    ASSIGN = "assign"


class Kind(str, Enum):
    PRODUCT = "product"
    ORDER = "order"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    visible: bool = True
    reason: str = ""

    def __bool__(self):
        return self.allowed


ALLOW = Decision(True)


def _deny(reason: str, visible: bool = True) -> Decision:
    return Decision(False, visible, reason)


def _same(a, b) -> bool:
    return a is not None and b is not None and str(a) == str(b)


def _product_access(user: dict, role: Role, product: dict, action: Action) -> Decision:
    if role is Role.ADMIN:
        return ALLOW
    visible = bool(product.get("is_active", True)) or _same(product.get("seller"), user["_id"])
    if action is Action.READ:
        return ALLOW if visible else _deny("Product not found", visible=False)
    if action in (Action.UPDATE, Action.DELETE):
        if role is Role.SELLER and _same(product.get("seller"), user["_id"]):
            return ALLOW
        if role is Role.SELLER:
            return _deny("Access denied. You can only manage your own products.", visible)
        return _deny("Access denied. Only admins and sellers can manage products.", visible)
    return _deny(f"Action '{action.value}' is not supported on products", visible)


def _order_visible(user: dict, role: Role, order: dict) -> bool:
    if role is Role.CUSTOMER:
        return _same(order.get("customer"), user["_id"])
    if role is Role.SELLER:
        return any(_same(s, user["_id"]) for s in order.get("sellers", []))
    if role is Role.DELIVERY:
        return _same((order.get("delivery") or {}).get("delivery_agent"), user["_id"])
    raise ValueError(f"Unhandled role: {role}")


def _claimable(order: dict) -> bool:
    delivery = order.get("delivery") or {}
    return order.get("status") == OrderStatus.CONFIRMED.value and not delivery.get("delivery_agent")


def _order_access(user: dict, role: Role, order: dict, action: Action) -> Decision:
    if role is Role.ADMIN:
        return ALLOW

    visible = _order_visible(user, role, order)
    if role is Role.DELIVERY and not visible and action in (Action.UPDATE_STATUS, Action.TRACK):
        # unassigned confirmed orders are open for any delivery agent to pick up
        if _claimable(order):
            return ALLOW
    if not visible:
        return _deny("Order not found", visible=False)

    if action is Action.READ:
        return ALLOW
    if role is Role.CUSTOMER and action is Action.CANCEL:
        return ALLOW
    if role is Role.SELLER and action is Action.UPDATE_STATUS:
        return ALLOW
    if role is Role.DELIVERY and action in (Action.UPDATE_STATUS, Action.TRACK):
        return ALLOW
    if action in (Action.UPDATE, Action.ASSIGN):
        return _deny("Only admins can update orders")
    if action is Action.CANCEL:
        return _deny("Only the customer who placed the order can cancel it")
    if action is Action.TRACK:
        return _deny("Only delivery agents can add tracking information")
    return _deny("Access denied. You cannot manage this order.")


def can_access(user: dict, kind: Kind, resource: dict, action: Action) -> Decision:
    role = Role(user["role"])
    if kind is Kind.PRODUCT:
        return _product_access(user, role, resource, action)
    if kind is Kind.ORDER:
        return _order_access(user, role, resource, action)
    raise ValueError(f"Unknown resource kind: {kind}")


def enforce(decision: Decision, not_found_message: str = "Resource not found"):
    if decision.allowed:
        return
    if not decision.visible:
        raise NotFound(not_found_message)
    raise Forbidden(decision.reason)
