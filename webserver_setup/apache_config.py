# ABOUTME: Apache virtual host generation for proxied, PHP-FPM and static deployments
# ABOUTME: Shares one routing body between the HTTP and HTTPS virtual hosts

import posixpath

from webserver_setup.models import AppConfig, DeploymentSpec
from webserver_setup.routing import (
    CACHE_RULES, COMPRESSIBLE_TYPES, HSTS_VALUE, SECURITY_HEADERS, TLS_CIPHERS,
    VhostVariant, variant_for,
)

SITE_SUFFIX = ".conf"
DEFAULT_SITE = "000-default.conf"

# Modules the generated virtual hosts rely on
REQUIRED_MODULES = ("proxy", "proxy_http", "proxy_wstunnel", "proxy_fcgi", "rewrite",
                    "ssl", "headers", "expires", "deflate")


def site_name(spec: DeploymentSpec) -> str:
    return f"{spec.domain}{SITE_SUFFIX}"


def vhost_path(spec: DeploymentSpec, config: AppConfig) -> str:
    return posixpath.join(config.apache_sites_available, site_name(spec))


def _name_lines(spec: DeploymentSpec) -> str:
    lines = f"    ServerName {spec.domain}"
    if spec.aliases:
        lines += f"\n    ServerAlias {' '.join(spec.aliases)}"
    return lines


def _proxy_body(spec: DeploymentSpec) -> str:
    backend = f"127.0.0.1:{spec.port}"
    return f"""    ProxyPreserveHost On
    ProxyPass / http://{backend}/
    ProxyPassReverse / http://{backend}/

    # WebSocket support
    RewriteEngine On
    RewriteCond %{{HTTP:Upgrade}} websocket [NC]
    RewriteCond %{{HTTP:Connection}} upgrade [NC]
    RewriteRule ^/?(.*) "ws://{backend}/$1" [P,L]

    ProxyTimeout 300
"""


def _hidden_files() -> str:
    return """    <FilesMatch "^\\.">
        Require all denied
    </FilesMatch>
"""


def _cache_rules() -> str:
    """FilesMatch sections in reverse precedence order.

    Apache merges every matching FilesMatch and the last one wins, so the
    highest-precedence rule has to come last.
    """
    blocks = []
    for rule in reversed(CACHE_RULES):
        blocks.append(f"""        # Cache policy: {rule.name}
        <FilesMatch "(?i){rule.pattern}">
            ExpiresDefault "{rule.apache_expires}"
            Header set Cache-Control "{rule.cache_control}"
        </FilesMatch>""")
    rules = "\n\n".join(blocks)
    return f"""    <IfModule mod_expires.c>
        ExpiresActive On

{rules}
    </IfModule>
"""


def _static_body(spec: DeploymentSpec) -> str:
    spa_rules = """
        # Client-side routes fall back to index.html
        RewriteEngine On
        RewriteBase /
        RewriteRule ^index\\.html$ - [L]
        RewriteCond %{REQUEST_FILENAME} !-f
        RewriteCond %{REQUEST_FILENAME} !-d
        RewriteRule . /index.html [L]
"""
    return f"""    DocumentRoot {spec.doc_root}

    <Directory {spec.doc_root}>
        Options -Indexes +FollowSymLinks
        AllowOverride None
        Require all granted
{spa_rules}    </Directory>

    <IfModule mod_deflate.c>
        AddOutputFilterByType DEFLATE {COMPRESSIBLE_TYPES}
    </IfModule>

{_cache_rules()}
{_hidden_files()}
    # Source maps are not published
    <FilesMatch "\\.map$">
        Require all denied
    </FilesMatch>
"""


def _php_body(spec: DeploymentSpec) -> str:
    return f"""    DocumentRoot {spec.doc_root}

    <Directory {spec.doc_root}>
        Options -Indexes +FollowSymLinks
        AllowOverride All
        Require all granted
    </Directory>

    <FilesMatch \\.php$>
        SetHandler "proxy:unix:{spec.php_fpm_socket}|fcgi://localhost"
    </FilesMatch>

{_hidden_files()}"""


def _common_tail(spec: DeploymentSpec) -> str:
    headers = "\n".join(
        f'    Header always set {name} "{value}"' for name, value in SECURITY_HEADERS
    )
    return f"""
    # Security headers
{headers}

    ErrorLog ${{APACHE_LOG_DIR}}/{spec.domain}_error.log
    CustomLog ${{APACHE_LOG_DIR}}/{spec.domain}_access.log combined"""


BODY_BUILDERS = {
    VhostVariant.REVERSE_PROXY: _proxy_body,
    VhostVariant.PHP_FPM: _php_body,
    VhostVariant.STATIC_SITE: _static_body,
}


def routing_body(spec: DeploymentSpec) -> str:
    """Everything inside the VirtualHost after the naming and TLS directives"""
    variant = variant_for(spec)
    return BODY_BUILDERS[variant](spec) + _common_tail(spec)


def render_http_vhost(spec: DeploymentSpec) -> str:
    return f"""# Apache virtual host for {spec.domain}, managed by webserver-setup
<VirtualHost *:80>
{_name_lines(spec)}

{routing_body(spec)}
</VirtualHost>
"""


def render_ssl_vhost(spec: DeploymentSpec) -> str:
    """HTTPS virtual host plus the port 80 redirect, replacing the HTTP-only file"""
    forwarded_proto = '    RequestHeader set X-Forwarded-Proto "https"\n' if spec.needs_proxy else ""
    return f"""# Apache virtual host for {spec.domain} with TLS, managed by webserver-setup
<VirtualHost *:80>
{_name_lines(spec)}

    RewriteEngine On
    RewriteRule ^(.*)$ https://%{{HTTP_HOST}}$1 [R=301,L]
</VirtualHost>

<VirtualHost *:443>
{_name_lines(spec)}

    SSLEngine on
    SSLCertificateFile {spec.ssl.cert_path}
    SSLCertificateKeyFile {spec.ssl.key_path}
    SSLProtocol -all +TLSv1.2 +TLSv1.3
    SSLCipherSuite {TLS_CIPHERS}
    SSLHonorCipherOrder off

    Header always set Strict-Transport-Security "{HSTS_VALUE}"
{forwarded_proto}
{routing_body(spec)}
</VirtualHost>
"""
