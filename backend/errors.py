from typing import Optional


class ShopProtocolError(Exception):
    """Base class for every failure raised by the shop protocol layer."""


class DecodeError(ShopProtocolError):
    def __init__(self, record: str, message: str):
        super().__init__(f"{record}: {message}")
        self.record = record


class TruncatedBuffer(DecodeError):
    def __init__(self, record: str, needed: int, available: int):
        super().__init__(record, f"buffer truncated (needed {needed} bytes, have {available})")
        self.needed = needed
        self.available = available


class InvalidUtf8(DecodeError):
    pass


class HistoryOwnerMismatch(DecodeError):
    def __init__(self, owner, user):
        super().__init__("PurchaseHistory", f"account derived for {owner} records user {user}")
        self.owner = owner
        self.user = user


class AddressDerivationExhausted(ShopProtocolError):
    pass


class ShopNotInitialized(ShopProtocolError):
    def __init__(self, address):
        super().__init__(f"Shop account {address} not found on-chain")
        self.address = address


class ItemNotFound(ShopProtocolError):
    def __init__(self, item_id: int, address=None):
        super().__init__(f"Item #{item_id} not found")
        self.item_id = item_id
        self.address = address


class ItemAlreadyExists(ShopProtocolError):
    def __init__(self, item_id: int, address=None):
        super().__init__(f"Item #{item_id} already exists at {address}")
        self.item_id = item_id
        self.address = address


class InsufficientFunds(ShopProtocolError):
    def __init__(self, balance: int, price: int):
        super().__init__(f"Insufficient funds: need {price} lamports but have {balance} lamports")
        self.balance = balance
        self.price = price


class SigningRejected(ShopProtocolError):
    pass


class SubmissionFailed(ShopProtocolError):
    def __init__(self, reason: str, signature: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.signature = signature


class ConfirmationTimeout(ShopProtocolError):
    def __init__(self, signature: str, timeout_sec: float):
        super().__init__(f"Transaction {signature} not confirmed within {timeout_sec}s")
        self.signature = signature
        self.timeout_sec = timeout_sec


class UnknownNetwork(ShopProtocolError):
    def __init__(self, fingerprint: bytes):
        super().__init__(f"Genesis hash {fingerprint.hex()} matches no known network")
        self.fingerprint = fingerprint
