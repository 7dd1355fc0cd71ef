"""SavvyShield - risk scoring, enforcement decisions and proactive investigation."""

__version__ = "1.0.0"
