"""
Integrations package initialization.
Exports the EVM chain access used by the transfer executor.
"""
from .evm import ERC20_ABI, ChainSigner, SignerRegistry

__all__ = [
    "ERC20_ABI",
    "ChainSigner",
    "SignerRegistry",
]
