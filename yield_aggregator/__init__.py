"""Client core for the cross-chain yield aggregator program."""
__version__ = "0.1.0"
