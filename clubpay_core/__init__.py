"""
Club Fee Billing
================

Core modules for recurring club membership fees.

This package provides the backend infrastructure including:
- Scheduled per-member fee charging across many clubs
- Standing subscription pause/resume by billable month
- Payment processor webhook verification and ledger reconciliation
- Durable transaction ledger
"""

__version__ = "1.0.0"
