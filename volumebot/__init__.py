"""
Multi-wallet volume bot for a constant-product bonding curve on Solana.

The ``solana`` package holds the chain-facing components (pricing, wallet fleet,
lookup table management, transaction batching and submission). The ``utils``
package holds storage, retry and polling helpers shared by those components.
"""

__version__ = "0.1.0"
