from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class OrderTicket:
    """Normalized view of an order acknowledgement across live and paper flows."""

    symbol: str
    side: str
    type: str
    amount: float
    status: Optional[str] = None
    price: Optional[float] = None
    exchange_order_id: Optional[str] = None
    reduce_only: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.exchange_order_id:
            return self.exchange_order_id
        fallback = self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    @classmethod
    def from_ccxt(cls, order: Dict[str, Any], reduce_only: bool = False) -> "OrderTicket":
        return cls(
            symbol=order.get("symbol") or "",
            side=str(order.get("side") or "").lower(),
            type=str(order.get("type") or ""),
            amount=float(order.get("amount") or 0.0),
            status=order.get("status"),
            price=float(order["price"]) if order.get("price") is not None else None,
            exchange_order_id=str(order["id"]) if order.get("id") is not None else None,
            reduce_only=reduce_only,
            raw=order,
        )

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "amount": self.amount,
            "price": self.price,
            "reduce_only": self.reduce_only,
        }
        if self.raw:
            data["raw"] = self.raw
        return data
