"""Background workers that drain the signal queue and the embedding outbox."""
