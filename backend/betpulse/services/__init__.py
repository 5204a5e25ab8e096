"""Domain services: fairness, ledger, settlement, reconciliation and payments."""
