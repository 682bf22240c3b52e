"""
Payments App - Payment Event Persistence

Responsibilities:
- Subscribe to the payment topic stream through a consumer group
- Persist each event id to PostgreSQL, at most one row per id
- Acknowledge messages only after they are stored
- Nack failing messages for redelivery, dead-letter them after repeated failures

Outputs:
- PostgreSQL table: payment_events (id unique, with inserted_at timestamp)
- Redis stream: {PROJECT_ID}.{PAYMENT_TOPIC}.dlq for dead-lettered messages

Database Schema:
- payment_events(id TEXT NOT NULL UNIQUE, inserted_at TIMESTAMPTZ NOT NULL)
"""
