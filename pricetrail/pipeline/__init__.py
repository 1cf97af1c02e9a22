"""Retail price-history ingestion pipeline.

Per retailer: fetch listings, resolve identities in tiers, ingest one
transaction per batch, then append the batch's prices.
"""
