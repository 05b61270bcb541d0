"""
LeadPay Kernel

The financial and negotiation core of the lead marketplace:
- Provider/Buyer negotiation state machine
- Weekly/monthly lead cap windows with atomic counter updates
- Append-only transaction ledger with compensating reversals
- Balances derived from the ledger, never stored
"""

__version__ = "0.1.0"
