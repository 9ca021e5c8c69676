# ABOUTME: Server-independent routing decisions shared by the nginx and Apache renderers
# ABOUTME: Vhost variant selection, the ordered cache policy table and common header sets

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from webserver_setup.errors import RenderError
from webserver_setup.models import AppKind, DeploymentSpec, FrontendMode


class VhostVariant(str, Enum):
    """Closed set of vhost bodies"""
    REVERSE_PROXY = "reverse_proxy"
    PHP_FPM = "php_fpm"
    STATIC_SITE = "static_site"


def _variant_table() -> Dict[Tuple[AppKind, FrontendMode, bool], VhostVariant]:
    table = {
        (AppKind.NODEJS, FrontendMode.NONE, True): VhostVariant.REVERSE_PROXY,
        (AppKind.PYTHON, FrontendMode.NONE, True): VhostVariant.REVERSE_PROXY,
        (AppKind.PROXY, FrontendMode.NONE, True): VhostVariant.REVERSE_PROXY,
        (AppKind.PHP, FrontendMode.NONE, False): VhostVariant.PHP_FPM,
        (AppKind.STATIC, FrontendMode.NONE, False): VhostVariant.STATIC_SITE,
    }
    for kind in (AppKind.NEXTJS, AppKind.NUXTJS, AppKind.SVELTE):
        table[(kind, FrontendMode.SSR, True)] = VhostVariant.REVERSE_PROXY
    table[(AppKind.NEXTJS, FrontendMode.STANDALONE, True)] = VhostVariant.REVERSE_PROXY
    for kind, mode in (
        (AppKind.NEXTJS, FrontendMode.STATIC),
        (AppKind.NUXTJS, FrontendMode.STATIC),
        (AppKind.NUXTJS, FrontendMode.SPA),
        (AppKind.REACT, FrontendMode.SPA),
        (AppKind.VUE, FrontendMode.SPA),
        (AppKind.ANGULAR, FrontendMode.SPA),
        (AppKind.SVELTE, FrontendMode.STATIC),
        (AppKind.SVELTE, FrontendMode.SPA),
    ):
        table[(kind, mode, False)] = VhostVariant.STATIC_SITE
    return table


VHOST_VARIANTS = _variant_table()


def vhost_variant(app_kind: AppKind, frontend_mode: FrontendMode, needs_proxy: bool) -> VhostVariant:
    try:
        return VHOST_VARIANTS[(app_kind, frontend_mode, needs_proxy)]
    except KeyError:
        raise RenderError(
            f"No vhost body for {app_kind.value} in {frontend_mode.value} mode "
            f"(proxied={needs_proxy})"
        )


def variant_for(spec: DeploymentSpec) -> VhostVariant:
    return vhost_variant(spec.app_kind, spec.frontend_mode, spec.needs_proxy)


@dataclass(frozen=True)
class CacheRule:
    name: str
    pattern: str
    nginx_expires: str
    apache_expires: str
    cache_control: str
    quiet: bool = False


# Ordered by precedence: the first matching rule decides a file's policy
CACHE_RULES: Tuple[CacheRule, ...] = (
    CacheRule("hashed assets", r"\.[a-f0-9]{8,}\.(js|css)$", "1y", "access plus 1 year",
              "public, max-age=31536000, immutable", quiet=True),
    CacheRule("images and fonts", r"\.(jpg|jpeg|png|gif|ico|svg|webp|avif|woff|woff2|ttf|eot)$", "1y",
              "access plus 1 year", "public, max-age=31536000, immutable", quiet=True),
    CacheRule("scripts and styles", r"\.(js|css)$", "1M", "access plus 1 month",
              "public, max-age=2592000", quiet=True),
    CacheRule("html", r"\.html$", "-1", "access plus 0 seconds",
              "no-cache, no-store, must-revalidate"),
    CacheRule("data files", r"\.(json|xml)$", "1h", "access plus 1 hour",
              "public, max-age=3600"),
)

_COMPILED_RULES = tuple((rule, re.compile(rule.pattern, re.IGNORECASE)) for rule in CACHE_RULES)


def cache_rule_for(filename: str) -> Optional[CacheRule]:
    """The cache rule a web server applies to a requested file name, if any"""
    for rule, pattern in _COMPILED_RULES:
        if pattern.search(filename):
            return rule
    return None


SECURITY_HEADERS: Tuple[Tuple[str, str], ...] = (
    ("X-Content-Type-Options", "nosniff"),
    ("X-Frame-Options", "SAMEORIGIN"),
    ("X-XSS-Protection", "1; mode=block"),
    ("Referrer-Policy", "strict-origin-when-cross-origin"),
)

HSTS_VALUE = "max-age=31536000; includeSubDomains"

COMPRESSIBLE_TYPES = (
    "text/plain text/css application/json application/javascript "
    "text/xml application/xml image/svg+xml application/wasm"
)

TLS_PROTOCOLS = "TLSv1.2 TLSv1.3"
TLS_CIPHERS = (
    "ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:"
    "ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384"
)
