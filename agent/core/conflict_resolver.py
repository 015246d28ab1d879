"""
Resolution of bind targets claimed by more than one configuration.
"""

from datetime import date
from typing import Dict, List, Optional, Sequence

from models.certificate import CertificateConfig


def find_conflicts(configs: Sequence[CertificateConfig]) -> Dict[str, List[int]]:
    """
    Domains bound by two or more enabled configurations.

    Returns:
        Domain to config indexes, in first-seen order
    """
    claims: Dict[str, List[int]] = {}
    for index, cfg in enumerate(configs):
        if not cfg.enabled:
            continue
        for rule in cfg.bind_rules:
            indexes = claims.setdefault(rule.domain.lower(), [])
            if index not in indexes:
                indexes.append(index)
    return {domain: indexes for domain, indexes in claims.items() if len(indexes) > 1}


def _rank(index: int, cfg: CertificateConfig) -> tuple:
    expires: Optional[date] = cfg.expiry_date()
    # Known expiry beats unknown, later beats earlier, then the newer order,
    # then the earlier config so full ties stay independent of input order
    return (expires is not None, expires or date.min, cfg.order_id, -index)


def pick_owner(indexes: Sequence[int], configs: Sequence[CertificateConfig]) -> Optional[int]:
    """
    Choose which configuration owns a contested domain.

    Out-of-range and disabled candidates are ignored.

    Returns:
        Index of the winning config, or None if no candidate is usable
    """
    candidates = [i for i in indexes if 0 <= i < len(configs) and configs[i].enabled]
    if not candidates:
        return None
    return max(candidates, key=lambda i: _rank(i, configs[i]))


class ConflictResolver:
    """Owner lookup for one pass over a fixed list of configurations."""

    def __init__(self, configs: Sequence[CertificateConfig]):
        self.configs = configs
        self.conflicts = find_conflicts(configs)
        self._owners = {domain: pick_owner(indexes, configs) for domain, indexes in self.conflicts.items()}

    def owns(self, index: int, domain: str) -> bool:
        """Whether the config at ``index`` may bind ``domain``."""
        domain = domain.lower()
        if domain not in self.conflicts:
            return True
        return self._owners[domain] == index

    def owner_of(self, domain: str) -> Optional[int]:
        return self._owners.get(domain.lower())
