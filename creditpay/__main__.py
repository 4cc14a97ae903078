"""
Entry point for running CreditPay as a module.

Usage:
    python -m creditpay
"""

from creditpay.cli import main

if __name__ == "__main__":
    main()
