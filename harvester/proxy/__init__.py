"""
SERP Harvester proxy module.
"""

from harvester.proxy.policy import ProxyPolicy, ProxyRoute, ProxyState, parse_proxy_list

__all__ = ["ProxyPolicy", "ProxyRoute", "ProxyState", "parse_proxy_list"]
