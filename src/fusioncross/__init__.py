"""fusioncross - cross-chain atomic swaps with Dutch auction partial fills."""

__version__ = "0.1.0"
