"""fundsweep - re-runnable data reconciliation for the fundraising document store."""

__version__ = "0.1.0"
