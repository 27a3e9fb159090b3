"""Payment orchestration and reconciliation for crowdfunding contributions."""

__version__ = "1.0.0"
