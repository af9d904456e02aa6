from meterpay.settlement.engine import SettlementEngine

__all__ = ["SettlementEngine"]
