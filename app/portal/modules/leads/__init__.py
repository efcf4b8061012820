"""
Inbound lead ingestion from the marketing site.
"""
