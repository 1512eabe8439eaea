"""
Delivery engine dependency.

Routes get the engine through this function so tests can swap in an
engine bound to a test database and a mock HTTP transport.
"""
from gateway.services.delivery_engine import DeliveryEngine


def get_delivery_engine() -> DeliveryEngine:
    return DeliveryEngine()
