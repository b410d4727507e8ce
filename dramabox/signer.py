import base64
import hashlib
import hmac
import random
import uuid
from dataclasses import dataclass


@dataclass(frozen=True)
class DeviceIdentity:
    device_id: str
    android_id: str
    spoofed_ip: str


def random_ip() -> str:
    return ".".join(str(random.randint(1, 254)) for _ in range(4))


def random_android_id() -> str:
    return "".join(random.choice("0123456789abcdef") for _ in range(16))


def new_identity() -> DeviceIdentity:
    return DeviceIdentity(
        device_id=str(uuid.uuid4()),
        android_id=random_android_id(),
        spoofed_ip=random_ip(),
    )


class Signer:
    """HMAC-SHA256 request signer.

    The upstream verifies ``sn`` against the concatenation
    ``timestamp=<ms><body><device-id><android-id>[<tn>]`` with no separators,
    so callers must pass the material in exactly that order.
    """

    def __init__(self, secret: str):
        self._key = secret.encode("utf-8")

    def sign(self, material: str) -> str:
        digest = hmac.new(self._key, material.encode("utf-8"), hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def material(self, timestamp: int, body: str, identity: DeviceIdentity, tn: str = "") -> str:
        return f"timestamp={timestamp}{body}{identity.device_id}{identity.android_id}{tn}"
