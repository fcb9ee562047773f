# setup.py
from setuptools import setup, find_packages

setup(
    name="yield_aggregator",
    version="0.1.0",
    packages=find_packages(),
    install_requires=[
        "msgpack",         # instruction signing data, ledger snapshots
        "PyNaCl",          # ed25519
        "pycryptodome",    # keccak-256
        "prometheus_client",
        "solders",         # pubkeys, program-derived addresses
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "yield-aggregator=yield_aggregator.cli:main",
        ],
    },
)
