"""
ENS Activity Bot.

Watches ENS marketplace activity (sales, registrations, bids), decides which
events are new and worth posting, and publishes them under a rolling daily
cap. Storage, ingestion, enrichment, publishing and monitoring live in
separate layers; the core layer schedules pollers and reacts to posts.
"""

__version__ = "0.1.0"
