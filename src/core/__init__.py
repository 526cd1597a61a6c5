"""Core domain package for circlewatch.

Core contains the ingestion loop, fan-out, delivery filtering, and deadline
scheduling without any GraphQL, Telegram, or storage-specific code, keeping
the business logic portable.
"""
