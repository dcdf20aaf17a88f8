"""
Infrastructure components for background processing.

- DeliveryScheduler: recurring driver for webhook delivery passes
"""

from __future__ import annotations

from src.infra.background_worker import DeliveryScheduler

__all__ = ["DeliveryScheduler"]
