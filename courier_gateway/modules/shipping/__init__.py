"""
Shipping Module

- BaseCarrier interface for all carrier adapters
- CarrierFactory builds one adapter per configured carrier
"""
from courier_gateway.modules.shipping.carriers import CarrierFactory, register_carrier
from courier_gateway.modules.shipping.carriers.base import BaseCarrier

__all__ = [
    "CarrierFactory",
    "register_carrier",
    "BaseCarrier",
]
