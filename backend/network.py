import logging
from dataclasses import dataclass
from typing import Callable, Optional

from errors import UnknownNetwork
from rpc import ShopConnection, connect_rpc
from settings import KnownNetwork, NetworkConfig

logger = logging.getLogger("shop.network")

UNKNOWN_NETWORK_NAME = "Unknown Network"


@dataclass(frozen=True)
class NetworkStatus:
    ok: bool
    expected: KnownNetwork
    detected: Optional[KnownNetwork] = None

    @property
    def detected_name(self) -> str:
        if self.ok:
            return self.expected.name
        if self.detected is None:
            return UNKNOWN_NETWORK_NAME
        return self.detected.name


class NetworkVerifier:
    """
    Compares the live connection's genesis hash with the configured target.
    On mismatch every other catalog entry is queried in order until one matches.
    Nothing is cached between calls; wallets can switch networks at any time.
    """

    def __init__(self, config: NetworkConfig, connect: Callable[[str], ShopConnection] = connect_rpc):
        self.config = config
        self.connect = connect

    async def fingerprint_of(self, network: KnownNetwork) -> bytes:
        conn = self.connect(network.endpoint)
        try:
            return await conn.get_genesis_fingerprint()
        finally:
            await conn.close()

    async def detect(self, fingerprint: bytes) -> KnownNetwork:
        for network in self.config.catalog:
            if network == self.config.target:
                continue
            try:
                candidate = await self.fingerprint_of(network)
            except Exception:  # noqa: BLE001
                logger.warning("network_probe_failed network=%s endpoint=%s", network.name, network.endpoint, exc_info=True)
                continue
            if candidate == fingerprint:
                return network
        raise UnknownNetwork(fingerprint)

    async def verify(self, connection: ShopConnection) -> NetworkStatus:
        live = await connection.get_genesis_fingerprint()
        target = self.config.target
        try:
            expected = await self.fingerprint_of(target)
        except Exception:  # noqa: BLE001
            # Identity is advisory; an unreachable target counts as a mismatch.
            logger.warning("network_probe_failed network=%s endpoint=%s", target.name, target.endpoint, exc_info=True)
            expected = None
        if live == expected:
            return NetworkStatus(ok=True, expected=self.config.target, detected=self.config.target)
        logger.warning("network_mismatch expected=%s live=%s", self.config.target.name, live.hex())
        try:
            detected = await self.detect(live)
        except UnknownNetwork:
            logger.warning("network_unknown live=%s", live.hex())
            return NetworkStatus(ok=False, expected=self.config.target)
        return NetworkStatus(ok=False, expected=self.config.target, detected=detected)
