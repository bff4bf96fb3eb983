"""Transaction ledger: pending purchases and their terminal payment status."""
