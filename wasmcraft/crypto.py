"""Signing of datapack digests."""
from __future__ import annotations

from .constants import KEY_FILE, PUB_FILE

try:  # pragma: no cover - optional dependency
    from cryptography.hazmat.primitives.asymmetric import rsa, padding
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.exceptions import InvalidSignature
except ImportError:  # pragma: no cover
    rsa = padding = hashes = serialization = InvalidSignature = None


def _require_cryptography():
    if rsa is None or serialization is None or hashes is None or padding is None:
        raise RuntimeError(
            "Cryptography support is unavailable; install the 'cryptography' package"
        )


def _pss():
    return padding.PSS(mgf=padding.MGF1(hashes.SHA256()), salt_length=padding.PSS.MAX_LENGTH)


def ensure_keypair(key_file=KEY_FILE, pub_file=PUB_FILE):
    """Load the signing key, creating an RSA keypair if it doesn't exist."""
    _require_cryptography()

    try:
        with open(key_file, "rb") as f:
            return serialization.load_pem_private_key(f.read(), password=None)
    except FileNotFoundError:
        pass

    print("🔐 Generating new wasmcraft RSA keypair ...")
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with open(key_file, "wb") as f:
        f.write(
            private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
    with open(pub_file, "wb") as f:
        f.write(
            private_key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        )
    print(f"  ✓ Keys written to {key_file}, {pub_file}")
    return private_key


def sign_hash(sha256_hex, key_file=KEY_FILE, pub_file=PUB_FILE):
    """Sign a SHA256 hex digest with the private key."""
    _require_cryptography()
    private_key = ensure_keypair(key_file, pub_file)
    return private_key.sign(sha256_hex.encode(), _pss(), hashes.SHA256()).hex()


def verify_signature(sha256_hex, signature_hex, pub_file=PUB_FILE):
    """Verify a signature against the public key."""
    _require_cryptography()
    if InvalidSignature is None:  # pragma: no cover
        raise RuntimeError(
            "Cryptography support is unavailable; install the 'cryptography' package"
        )

    with open(pub_file, "rb") as f:
        public_key = serialization.load_pem_public_key(f.read())
    try:
        public_key.verify(
            bytes.fromhex(signature_hex), sha256_hex.encode(), _pss(), hashes.SHA256()
        )
        return True
    except InvalidSignature:
        return False


__all__ = ["ensure_keypair", "sign_hash", "verify_signature"]
