import logging
from typing import Optional

import requests
from pydantic import BaseModel

from shop_codec import Item

logger = logging.getLogger("shop.metadata")

LAMPORTS_PER_SOL = 1_000_000_000
IMAGE_PREFIX = "image:"
IPFS_PREFIX = "ipfs://"
DEFAULT_IPFS_GATEWAY = "https://ipfs.io/ipfs/"
DEFAULT_DESCRIPTION = "A mysterious item from the blockchain"

PLACEHOLDER_IMAGES = {
    "default": "/items/placeholder.png",
    "sword": "/items/sword.png",
    "shield": "/items/shield.png",
    "potion": "/items/potion.png",
}


class ItemDisplay(BaseModel):
    id: int
    name: str
    description: str
    image: str
    price_lamports: int
    price_sol: float
    metadata_uri: str


def lamports_to_sol(lamports: int) -> float:
    """Display only. Balance checks compare lamports."""
    return lamports / LAMPORTS_PER_SOL


def image_uri_metadata(url: str) -> str:
    return f"{IMAGE_PREFIX}{url}"


def ipfs_to_http(uri: str, gateway: str = DEFAULT_IPFS_GATEWAY) -> str:
    if not uri.startswith(IPFS_PREFIX):
        return uri
    if not gateway.endswith("/"):
        gateway += "/"
    return gateway + uri[len(IPFS_PREFIX) :]


def fetch_metadata(uri: str, gateway: str = DEFAULT_IPFS_GATEWAY, timeout: float = 10.0) -> Optional[dict]:
    url = ipfs_to_http(uri, gateway)
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as exc:
        logger.warning("metadata_fetch_failed uri=%s err=%s", uri, exc)
        return None
    if not isinstance(data, dict):
        logger.warning("metadata_not_object uri=%s", uri)
        return None
    return data


def placeholder_for(item_type: str, name: str) -> str:
    item_type = item_type.lower()
    if "weapon" in item_type or "sword" in name.lower():
        return PLACEHOLDER_IMAGES["sword"]
    if "shield" in item_type:
        return PLACEHOLDER_IMAGES["shield"]
    if "potion" in item_type:
        return PLACEHOLDER_IMAGES["potion"]
    return PLACEHOLDER_IMAGES["default"]


def _text(meta: dict, key: str) -> Optional[str]:
    # Hand-written JSON; anything that is not a string is ignored.
    value = meta.get(key)
    return value if isinstance(value, str) and value else None


def describe_item(item: Item, gateway: str = DEFAULT_IPFS_GATEWAY, timeout: float = 10.0) -> ItemDisplay:
    name = f"Item #{item.id}"
    description = DEFAULT_DESCRIPTION
    image = PLACEHOLDER_IMAGES["default"]
    uri = item.metadata_uri

    if uri.startswith(IMAGE_PREFIX):
        image = uri[len(IMAGE_PREFIX) :] or image
    elif uri:
        meta = fetch_metadata(uri, gateway, timeout)
        if meta:
            name = _text(meta, "name") or name
            description = _text(meta, "description") or description
            raw_image = _text(meta, "image")
            if _text(meta, "image_url"):
                image = meta["image_url"]
            elif raw_image and raw_image.startswith(IPFS_PREFIX):
                image = ipfs_to_http(raw_image, gateway)
            elif raw_image and raw_image.startswith("http"):
                image = raw_image
            elif meta.get("image"):
                image = placeholder_for(_text(meta, "item_type") or "", name)

    return ItemDisplay(
        id=item.id,
        name=name,
        description=description,
        image=image,
        price_lamports=item.price,
        price_sol=lamports_to_sol(item.price),
        metadata_uri=uri,
    )
