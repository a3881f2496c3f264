"""Infrastructure adapters: database, ledger transport, Redis, locks."""
