from .models import Base, PoolReadingRow, Sensor, TemperatureReadingRow
from .store import SqlReadingStore

__all__ = ["Base", "PoolReadingRow", "Sensor", "SqlReadingStore", "TemperatureReadingRow"]
