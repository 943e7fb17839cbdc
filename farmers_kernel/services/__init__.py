"""Kernel services."""

from farmers_kernel.services.farmer_registry import FarmerRegistry

__all__ = ["FarmerRegistry"]
