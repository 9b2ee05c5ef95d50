"""
carddav_sync.sync - Reconciliation engine

Contact model, capability detection, classification, pull, push,
shared-contact protection and the orchestrator tying them together.
"""
