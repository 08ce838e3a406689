"""
Client address filtering.

An embedded server normally listens on loopback only; IPFilter narrows the
accepted peers further (or widens them when binding a LAN interface) with
individual addresses and CIDR ranges.
"""

"""
Copyright 2025 Chris Bunting
File: security.py | Purpose: Client address filtering
@author Chris Bunting | @version 1.1.0

CHANGELOG:
2025-08-28 - Chris Bunting: Keep IP filtering only, accept IPv6 ranges directly
2025-07-11 - Chris Bunting: Fixed IP validation
2025-07-10 - Chris Bunting: Initial implementation
"""

from ipaddress import IPv4Address, IPv6Address, IPv4Network, IPv6Network, ip_address, ip_network
from typing import Iterable, List, Optional, Set, Union


class IPFilter:
    """IP whitelist/blacklist implementation with CIDR support.

    When a whitelist exists only whitelisted peers are allowed; otherwise
    every peer not on the blacklist is.
    """

    def __init__(self, whitelist: Optional[Iterable[str]] = None,
                 blacklist: Optional[Iterable[str]] = None):
        self.whitelist_ips: Set[Union[IPv4Address, IPv6Address]] = set()
        self.blacklist_ips: Set[Union[IPv4Address, IPv6Address]] = set()
        self.whitelist_networks: List[Union[IPv4Network, IPv6Network]] = []
        self.blacklist_networks: List[Union[IPv4Network, IPv6Network]] = []
        for entry in whitelist or ():
            self.add_to_whitelist(entry)
        for entry in blacklist or ():
            self.add_to_blacklist(entry)

    @staticmethod
    def _parse(ip_or_cidr: str, kind: str):
        try:
            if '/' in ip_or_cidr:
                return ip_network(ip_or_cidr, strict=False)
            return ip_address(ip_or_cidr)
        except ValueError as e:
            raise ValueError(f"Invalid IP address or CIDR range for {kind}: {ip_or_cidr}") from e

    def add_to_whitelist(self, ip_or_cidr: str) -> None:
        """Add IP or CIDR range to whitelist.

        Raises:
            ValueError: If the IP address or CIDR range is invalid
        """
        parsed = self._parse(ip_or_cidr, 'whitelist')
        if isinstance(parsed, (IPv4Network, IPv6Network)):
            self.whitelist_networks.append(parsed)
        else:
            self.whitelist_ips.add(parsed)

    def add_to_blacklist(self, ip_or_cidr: str) -> None:
        """Add IP or CIDR range to blacklist.

        Raises:
            ValueError: If the IP address or CIDR range is invalid
        """
        parsed = self._parse(ip_or_cidr, 'blacklist')
        if isinstance(parsed, (IPv4Network, IPv6Network)):
            self.blacklist_networks.append(parsed)
        else:
            self.blacklist_ips.add(parsed)

    @property
    def active(self) -> bool:
        return bool(self.whitelist_ips or self.whitelist_networks
                    or self.blacklist_ips or self.blacklist_networks)

    def is_allowed(self, ip: Optional[str]) -> bool:
        """Check if a peer address is allowed.

        Note:
            Missing or invalid addresses are blocked whenever a rule exists
        """
        if not self.active:
            return True
        try:
            ip_obj = ip_address(ip or '')
        except ValueError:
            return False

        if self.whitelist_ips or self.whitelist_networks:
            if ip_obj in self.whitelist_ips:
                return True
            return any(ip_obj in network for network in self.whitelist_networks)

        if ip_obj in self.blacklist_ips:
            return False
        return not any(ip_obj in network for network in self.blacklist_networks)
