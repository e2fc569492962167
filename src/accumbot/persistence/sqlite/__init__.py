from accumbot.persistence.sqlite.candles_repo import SqliteCandlesRepo
from accumbot.persistence.sqlite.cycles_repo import SqliteCyclesRepo
from accumbot.persistence.sqlite.orders_repo import SqliteOrdersRepo
from accumbot.persistence.sqlite.settings_repo import SqliteSettingsRepo, SqliteSnapshotsRepo

__all__ = [
    "SqliteCandlesRepo",
    "SqliteCyclesRepo",
    "SqliteOrdersRepo",
    "SqliteSettingsRepo",
    "SqliteSnapshotsRepo",
]
