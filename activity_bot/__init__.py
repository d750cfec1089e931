"""Activity bot: synthetic branch / commit / PR / merge cycles on a cron schedule."""

__version__ = "0.1.0"
