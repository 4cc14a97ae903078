"""
CreditPay - prepaid credits funded by on-chain payments.

Provides:
- Deterministic per-payment deposit addresses (Bitcoin, EVM, Solana)
- Chain adapters that normalize payment verification
- Settlement of payment requests into credits, exactly once
- Credit and escrow ledgers for marketplace integrations
"""

__version__ = "0.1.0"
