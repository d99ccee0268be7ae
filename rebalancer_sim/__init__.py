"""
Backtest of a weighted AMM rebalancing portfolio against buy-and-hold.
"""
from . import flow
from . import portfolio
from . import quotes
from . import utils

__all__ = ['flow', 'portfolio', 'quotes', 'utils']
