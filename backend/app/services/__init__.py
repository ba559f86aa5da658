"""Business logic services: ledger, adapters, aggregation, embeddings, orchestration and search."""
