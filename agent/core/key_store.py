"""
Order store for locally generated keys and issued certificates.

Each order lives in its own directory under ``orders/<order_id>/``:

    private.key   Fernet-encrypted private key ("v1:fernet:" prefix)
    cert.pem      issued certificate
    chain.pem     CA chain, when the issuer returned one
    meta.json     OrderMeta

Directories are created 0700 and files written 0600, atomically.
"""

import logging
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from core.encryption_service import EncryptionService
from core.file_utils import atomic_write, ensure_private_dir
from models.certificate import OrderMeta

logger = logging.getLogger(__name__)

KEY_PREFIX = "v1:fernet:"

PRIVATE_KEY_FILE = "private.key"
CERT_FILE = "cert.pem"
CHAIN_FILE = "chain.pem"
META_FILE = "meta.json"


class KeyStoreError(Exception):
    """Order store read/write failure."""

    def __init__(self, message: str, order_id: Optional[int] = None):
        self.message = message
        self.order_id = order_id
        super().__init__(message)


class OrderNotFoundError(KeyStoreError):
    """No stored data for the order."""

    pass


@contextmanager
def _storage_errors(action: str, order_id: int) -> Iterator[None]:
    """Re-raise filesystem and decoding failures as KeyStoreError."""
    try:
        yield
    except (OSError, UnicodeError) as e:
        raise KeyStoreError(f"Failed to {action} for order {order_id}: {e}", order_id=order_id)


class OrderStore:
    """
    Persistent per-order storage of keys, certificates and metadata.

    The lock is shared with the config store so read-modify-write cycles
    on either never interleave.
    """

    def __init__(self, base_dir: Path, encryption: EncryptionService, lock: Optional[threading.RLock] = None):
        self.base_dir = Path(base_dir)
        self.encryption = encryption
        self.lock = lock or threading.RLock()

    def order_dir(self, order_id: int) -> Path:
        if order_id <= 0:
            raise KeyStoreError(f"Invalid order id: {order_id}", order_id=order_id)
        return self.base_dir / str(order_id)

    def _ensure_order_dir(self, order_id: int) -> Path:
        ensure_private_dir(self.base_dir)
        return ensure_private_dir(self.order_dir(order_id))

    # Private keys

    def has_private_key(self, order_id: int) -> bool:
        with _storage_errors("check private key", order_id):
            return (self.order_dir(order_id) / PRIVATE_KEY_FILE).exists()

    def save_private_key(self, order_id: int, key_pem: str) -> None:
        ciphertext = self.encryption.encrypt_string(key_pem)
        with self.lock, _storage_errors("save private key", order_id):
            order_dir = self._ensure_order_dir(order_id)
            atomic_write(order_dir / PRIVATE_KEY_FILE, (KEY_PREFIX + ciphertext).encode("utf-8"))
        logger.info(f"Saved private key for order {order_id}")

    def load_private_key(self, order_id: int) -> str:
        """
        Load and decrypt an order's private key.

        Raises:
            OrderNotFoundError: if no key is stored
            KeyStoreError: if the file is not in the expected format or cannot be decrypted
        """
        path = self.order_dir(order_id) / PRIVATE_KEY_FILE
        try:
            data = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            raise OrderNotFoundError(f"No private key stored for order {order_id}", order_id=order_id)
        except (OSError, UnicodeError) as e:
            raise KeyStoreError(f"Failed to read private key for order {order_id}: {e}", order_id=order_id)

        if not data.startswith(KEY_PREFIX):
            raise KeyStoreError(f"Unrecognized private key format for order {order_id}", order_id=order_id)
        try:
            return self.encryption.decrypt_string(data[len(KEY_PREFIX):])
        except ValueError as e:
            raise KeyStoreError(f"Failed to decrypt private key for order {order_id}: {e}", order_id=order_id)

    # Certificates

    def save_certificate(self, order_id: int, cert_pem: str, chain_pem: str = "") -> None:
        with self.lock, _storage_errors("save certificate", order_id):
            order_dir = self._ensure_order_dir(order_id)
            atomic_write(order_dir / CERT_FILE, cert_pem.encode("utf-8"))
            chain_path = order_dir / CHAIN_FILE
            if chain_pem:
                atomic_write(chain_path, chain_pem.encode("utf-8"))
            else:
                chain_path.unlink(missing_ok=True)

    # Metadata

    def save_meta(self, meta: OrderMeta) -> None:
        with self.lock, _storage_errors("save metadata", meta.order_id):
            order_dir = self._ensure_order_dir(meta.order_id)
            atomic_write(order_dir / META_FILE, meta.model_dump_json(indent=2).encode("utf-8"))

    def load_meta(self, order_id: int) -> Optional[OrderMeta]:
        path = self.order_dir(order_id) / META_FILE
        try:
            return OrderMeta.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except OSError as e:
            raise KeyStoreError(f"Failed to read metadata for order {order_id}: {e}", order_id=order_id)
        except ValueError as e:
            raise KeyStoreError(f"Corrupt metadata for order {order_id}: {e}", order_id=order_id)

    # Orders

    def delete_order(self, order_id: int) -> None:
        """Remove everything stored for an order. Missing orders are not an error."""
        with self.lock, _storage_errors("delete stored data", order_id):
            order_dir = self.order_dir(order_id)
            if order_dir.exists():
                shutil.rmtree(order_dir)
                logger.info(f"Deleted stored data for order {order_id}")
