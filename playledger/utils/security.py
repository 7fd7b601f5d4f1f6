"""Hashing and identifier helpers"""
import hashlib
import hmac
import uuid

def hash_ip_address(ip_address: str, salt: str) -> str:
    """
    Hash an IP address with HMAC-SHA256 keyed by a server-side salt.

    The same (ip, salt) pair always yields the same digest, so plays from one
    address can be clustered without storing the address itself.
    """
    if not salt:
        raise ValueError("IP hash salt is required")
    return hmac.new(salt.encode('utf-8'), ip_address.encode('utf-8'), hashlib.sha256).hexdigest()

def generate_id() -> str:
    """Random UUIDv4 string used for event and session ids"""
    return str(uuid.uuid4())
