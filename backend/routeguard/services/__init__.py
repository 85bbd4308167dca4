"""Pipeline stages and the stores behind them."""
