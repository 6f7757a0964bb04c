"""CreditShaft loan lifecycle and position reconciliation engine."""
