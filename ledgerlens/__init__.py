"""
LedgerLens - bank statement ingestion and spending analytics.

- etl: statement extraction, AI parsing, normalization and reconciliation
- store: transaction persistence (Supabase or in-memory)
- analytics: dashboard and spending aggregations
- app: Flask API
"""
