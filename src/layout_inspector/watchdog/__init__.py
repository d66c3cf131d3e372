from layout_inspector.watchdog.service import WatchDog

__all__ = ["WatchDog"]
