"""gridengine - grid/DCA trading core with backtesting and parameter search."""

__version__ = "0.1.0"
