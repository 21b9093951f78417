from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx
from loguru import logger
from solders.keypair import Keypair

from ..errors import UpstreamUnavailable
from ..helpers import lamports_to_sol


# ----------------------------
# Provisioner Interface
# ----------------------------
class Provisioner(ABC):
    """On-chain collection / issuance machine setup plus metadata upload.

    Building and signing the program transactions happens behind this
    boundary.
    """

    @abstractmethod
    async def upload_metadata(self, document: Dict[str, Any]) -> str: ...

    @abstractmethod
    async def create_collection(
        self, name: str, symbol: str, metadata_uri: str
    ) -> str: ...

    @abstractmethod
    async def deploy_issuance_machine(
        self, collection_id: str, price_lamports: int, supply: int
    ) -> str: ...


# ----------------------------
# HTTP implementation (signing sidecar + storage bundler)
# ----------------------------
class HttpProvisioner(Provisioner):
    def __init__(self, http: httpx.AsyncClient, base_url: str,
                 metadata_upload_url: str,
                 timeout: Optional[float] = 60.0) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.metadata_upload_url = metadata_upload_url
        self.timeout = timeout

    async def _post(self, url: str, body: Dict[str, Any],
                    field: str) -> str:
        try:
            r = await self.http.post(url, json=body, timeout=self.timeout)
            r.raise_for_status()
            value = r.json().get(field)
        except (httpx.HTTPError, ValueError) as e:
            raise UpstreamUnavailable(f"provisioning call {url} failed: {e}")
        if not value:
            raise UpstreamUnavailable(f"{url}: response without {field!r}")
        return str(value)

    async def upload_metadata(self, document: Dict[str, Any]) -> str:
        return await self._post(self.metadata_upload_url, document, "uri")

    async def create_collection(
        self, name: str, symbol: str, metadata_uri: str
    ) -> str:
        return await self._post(f"{self.base_url}/collections", {
            "name": name,
            "symbol": symbol,
            "uri": metadata_uri,
            "sellerFeeBasisPoints": 0,
            "isCollection": True,
            "commitment": "finalized",
        }, "address")

    async def deploy_issuance_machine(
        self, collection_id: str, price_lamports: int, supply: int
    ) -> str:
        return await self._post(f"{self.base_url}/candy-machines", {
            "collection": collection_id,
            "itemsAvailable": supply,
            "maxSupply": supply,
            "symbol": "TICKET",
            "sellerFeeBasisPoints": 500,
            "guards": {"solPayment": {"lamports": price_lamports}},
            "commitment": "finalized",
        }, "address")


# ----------------------------
# Mock implementation
# ----------------------------
class MockProvisioner(Provisioner):
    """Hands out fresh addresses; nothing touches a network."""

    def __init__(self) -> None:
        self.collections: Dict[str, Dict[str, Any]] = {}
        self.machines: Dict[str, Dict[str, Any]] = {}

    async def upload_metadata(self, document: Dict[str, Any]) -> str:
        return f"mock://metadata/{Keypair().pubkey()}"

    async def create_collection(
        self, name: str, symbol: str, metadata_uri: str
    ) -> str:
        address = str(Keypair().pubkey())
        self.collections[address] = {
            "name": name, "symbol": symbol, "uri": metadata_uri,
        }
        logger.info(f"mock collection {address} for {name!r}")
        return address

    async def deploy_issuance_machine(
        self, collection_id: str, price_lamports: int, supply: int
    ) -> str:
        address = str(Keypair().pubkey())
        self.machines[address] = {
            "collection": collection_id, "supply": supply,
            "price_sol": lamports_to_sol(price_lamports),
        }
        logger.info(f"mock issuance machine {address} "
                    f"({supply} items, collection {collection_id})")
        return address
