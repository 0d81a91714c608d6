from dataclasses import dataclass
from typing import Optional, Tuple

from pydantic_settings import BaseSettings
from solders.pubkey import Pubkey

from tx_builder import DEFAULT_COMPUTE_UNIT_LIMIT

DEFAULT_PROGRAM_ID = "5F5gHfVH2p3YYgSuR42Bt2QBY7a6VmBV1CLXQwDmFBrF"


@dataclass(frozen=True)
class KnownNetwork:
    provider: str
    network: str
    name: str
    endpoint: str
    explorer_url: Optional[str] = None


# Probe order for network detection: grouped by provider.
NETWORK_CATALOG: Tuple[KnownNetwork, ...] = (
    KnownNetwork(
        "sonic",
        "mainnet-beta",
        "Sonic Mainnet Beta",
        "https://api.mainnet-alpha.sonic.game",
        "https://explorer.sonic.game",
    ),
    KnownNetwork(
        "sonic",
        "testnet",
        "Sonic Testnet",
        "https://api.testnet.sonic.game",
        "https://explorer.testnet.sonic.game",
    ),
    KnownNetwork("solana", "mainnet-beta", "Solana Mainnet Beta", "https://api.mainnet-beta.solana.com"),
    KnownNetwork("solana", "testnet", "Solana Testnet", "https://api.testnet.solana.com"),
    KnownNetwork("solana", "devnet", "Solana Devnet", "https://api.devnet.solana.com"),
)


def find_network(provider: str, network: str, catalog: Tuple[KnownNetwork, ...] = NETWORK_CATALOG) -> KnownNetwork:
    for entry in catalog:
        if entry.provider == provider and entry.network == network:
            return entry
    raise ValueError(f"No known network {provider}/{network}")


@dataclass(frozen=True)
class ShopConfig:
    program_id: Pubkey
    compute_unit_limit: int = DEFAULT_COMPUTE_UNIT_LIMIT
    explorer_url: Optional[str] = None

    def explorer_tx_url(self, signature: str) -> Optional[str]:
        if not self.explorer_url:
            return None
        return f"{self.explorer_url.rstrip('/')}/tx/{signature}"


@dataclass(frozen=True)
class NetworkConfig:
    target: KnownNetwork
    catalog: Tuple[KnownNetwork, ...] = NETWORK_CATALOG


class Settings(BaseSettings):
    shop_program_id: str = DEFAULT_PROGRAM_ID
    solana_rpc: str = "https://api.testnet.sonic.game"
    network_provider: str = "sonic"
    solana_network: str = "testnet"
    commitment: str = "confirmed"
    compute_unit_limit: int = DEFAULT_COMPUTE_UNIT_LIMIT
    confirm_timeout_seconds: float = 30.0
    confirm_poll_seconds: float = 0.8
    database_url: str = "sqlite:///./shop.db"
    admin_keypair_path: Optional[str] = None
    buyer_keypair_path: Optional[str] = None
    ipfs_gateway: str = "https://ipfs.io/ipfs/"
    metadata_timeout_seconds: float = 10.0
    item_scan_limit: int = 10  # catalog page scans ids 1..N

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def network_config(self) -> NetworkConfig:
        return NetworkConfig(target=find_network(self.network_provider, self.solana_network))

    def shop_config(self) -> ShopConfig:
        try:
            program_id = Pubkey.from_string(self.shop_program_id)
        except Exception as exc:  # noqa: BLE001
            raise ValueError(f"shop_program_id is not a valid pubkey: {exc}") from exc
        return ShopConfig(
            program_id=program_id,
            compute_unit_limit=self.compute_unit_limit,
            explorer_url=self.network_config().target.explorer_url,
        )
