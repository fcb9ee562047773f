"""
Configuration management for the aggregator client.
"""
import json
import os
from typing import Optional
from dataclasses import dataclass, asdict, field

from solders.pubkey import Pubkey

from yield_aggregator.chains import DEFAULT_CHAINS, ChainInfo, ChainRegistry

DEFAULT_PROGRAM_ID = "HeHD9gK7PC2tzxEVoL18eAz6EPLnXe7XY9CLnDCPeRiW"


@dataclass
class ProgramConfig:
    """Deployment the client talks to."""
    decimals: int  # Token precision differs per deployment; never defaulted
    program_id: str = DEFAULT_PROGRAM_ID
    mint: Optional[str] = None
    confirm_timeout: float = 30.0  # seconds

    def __post_init__(self):
        if isinstance(self.decimals, bool) or not isinstance(self.decimals, int) or self.decimals < 0:
            raise ValueError(f"decimals must be a non-negative integer, got {self.decimals!r}")
        Pubkey.from_string(self.program_id)
        if self.mint is not None:
            Pubkey.from_string(self.mint)

    @property
    def program_pubkey(self) -> Pubkey:
        return Pubkey.from_string(self.program_id)

    @property
    def mint_pubkey(self) -> Optional[Pubkey]:
        return Pubkey.from_string(self.mint) if self.mint else None


@dataclass
class ChainsConfig:
    """Target chains the bridge serves."""
    supported: list = field(default_factory=lambda: [c.to_dict() for c in DEFAULT_CHAINS])

    def registry(self) -> ChainRegistry:
        return ChainRegistry(ChainInfo(**entry) for entry in self.supported)


@dataclass
class MonitoringConfig:
    """Monitoring configuration."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 9090


@dataclass
class Config:
    """Main configuration."""
    program: ProgramConfig
    chains: ChainsConfig
    monitoring: MonitoringConfig

    @classmethod
    def default(cls, decimals: int) -> 'Config':
        """Default configuration for a token with the given precision."""
        return cls(
            program=ProgramConfig(decimals=decimals),
            chains=ChainsConfig(),
            monitoring=MonitoringConfig()
        )

    @classmethod
    def from_dict(cls, data: dict) -> 'Config':
        if 'decimals' not in data.get('program', {}):
            raise ValueError("program.decimals is required")
        return cls(
            program=ProgramConfig(**data['program']),
            chains=ChainsConfig(**data.get('chains', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {}))
        )

    @classmethod
    def from_file(cls, path: str) -> 'Config':
        """Load configuration from JSON file."""
        with open(path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def to_file(self, path: str):
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            'program': asdict(self.program),
            'chains': asdict(self.chains),
            'monitoring': asdict(self.monitoring)
        }
