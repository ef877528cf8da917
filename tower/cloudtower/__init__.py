from .client import CloudTowerClient

__all__ = ["CloudTowerClient"]
