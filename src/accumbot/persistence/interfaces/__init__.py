from accumbot.persistence.interfaces.candles_repo import CandlesRepoProtocol
from accumbot.persistence.interfaces.cycles_repo import CyclesRepoProtocol
from accumbot.persistence.interfaces.orders_repo import OrderExecutionUpdate, OrdersRepoProtocol
from accumbot.persistence.interfaces.settings_repo import SettingsRepoProtocol, SnapshotsRepoProtocol

__all__ = [
    "CandlesRepoProtocol",
    "CyclesRepoProtocol",
    "OrderExecutionUpdate",
    "OrdersRepoProtocol",
    "SettingsRepoProtocol",
    "SnapshotsRepoProtocol",
]
