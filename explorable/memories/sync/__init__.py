"""Offline-first reconciliation of locally authored records.

Modules:
    dedup      — dedup keys, server-id detection, remote key index
    reconcile  — ReconciliationEngine (watermark + retry set)
"""
