# ABOUTME: Nginx server block generation for proxied, PHP-FPM and static deployments
# ABOUTME: The HTTP and HTTPS server blocks share one routing body so they never drift apart

import posixpath

from webserver_setup.models import AppConfig, DeploymentSpec
from webserver_setup.routing import (
    CACHE_RULES, COMPRESSIBLE_TYPES, HSTS_VALUE, SECURITY_HEADERS, TLS_CIPHERS, TLS_PROTOCOLS,
    VhostVariant, variant_for,
)


def vhost_path(spec: DeploymentSpec, config: AppConfig) -> str:
    return posixpath.join(config.nginx_sites_available, spec.domain)


def _server_names(spec: DeploymentSpec) -> str:
    return " ".join(spec.server_names)


def connection_variable(spec: DeploymentSpec) -> str:
    # map variables are global to the http context, so each site gets its own.
    # Variable references stop at the first character outside [A-Za-z0-9_]
    name = spec.upstream_name.replace("-", "_")
    return f"${name}_connection"



def upstream_block(spec: DeploymentSpec) -> str:
    return f"""upstream {spec.upstream_name} {{
    server 127.0.0.1:{spec.port};
    keepalive 64;
}}

# Websocket upgrades get Connection: upgrade, other requests keep the upstream connection alive
map $http_upgrade {connection_variable(spec)} {{
    default upgrade;
    '' '';
}}
"""


def _header_lines(indent: str) -> str:
    """Response headers, repeated in every location that sets its own add_header

    nginx drops inherited add_header directives in such a location. HSTS comes from
    $hsts_header, which is empty in plain HTTP server blocks and is then not sent.
    """
    lines = [f'{indent}add_header {name} "{value}" always;' for name, value in SECURITY_HEADERS]
    lines.append(f"{indent}add_header Strict-Transport-Security $hsts_header always;")
    return "\n".join(lines)


def _common_tail(spec: DeploymentSpec) -> str:
    return f"""
    # Security headers
{_header_lines("    ")}

    # Gzip compression
    gzip on;
    gzip_vary on;
    gzip_min_length 1024;
    gzip_proxied any;
    gzip_types {COMPRESSIBLE_TYPES};

    access_log /var/log/nginx/{spec.domain}_access.log;
    error_log /var/log/nginx/{spec.domain}_error.log;"""


def _proxy_body(spec: DeploymentSpec) -> str:
    return f"""    location / {{
        proxy_pass http://{spec.upstream_name};
        proxy_http_version 1.1;
        proxy_set_header Upgrade $http_upgrade;
        proxy_set_header Connection {connection_variable(spec)};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_cache_bypass $http_upgrade;
        proxy_read_timeout 86400;
        proxy_send_timeout 86400;
    }}
"""


def _hidden_files() -> str:
    return """    # ACME challenges stay reachable, other dot files do not
    location ^~ /.well-known/ {
        allow all;
    }

    location ~ /\\. {
        deny all;
    }
"""


def _cache_locations() -> str:
    blocks = []
    for rule in CACHE_RULES:
        lines = [
            f"    # Cache policy: {rule.name}",
            # Quoted because patterns may contain braces
            f'    location ~* "{rule.pattern}" {{',
            f"        expires {rule.nginx_expires};",
            f'        add_header Cache-Control "{rule.cache_control}";',
            _header_lines("        "),
        ]
        if rule.quiet:
            lines.append("        access_log off;")
        lines.append("    }")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks) + "\n"


def _static_body(spec: DeploymentSpec) -> str:
    return f"""    root {spec.doc_root};
    index index.html index.htm;

{_hidden_files()}
    # Source maps are not published
    location ~* \\.map$ {{
        deny all;
    }}

    location / {{
        try_files $uri $uri/ /index.html;
    }}

{_cache_locations()}"""


def _php_body(spec: DeploymentSpec) -> str:
    return f"""    root {spec.doc_root};
    index index.php index.html index.htm;

{_hidden_files()}
    location / {{
        try_files $uri $uri/ /index.php?$query_string;
    }}

    location ~ \\.php$ {{
        fastcgi_pass unix:{spec.php_fpm_socket};
        fastcgi_param SCRIPT_FILENAME $realpath_root$fastcgi_script_name;
        include fastcgi_params;
        fastcgi_read_timeout 300;
    }}
"""


BODY_BUILDERS = {
    VhostVariant.REVERSE_PROXY: _proxy_body,
    VhostVariant.PHP_FPM: _php_body,
    VhostVariant.STATIC_SITE: _static_body,
}


def routing_body(spec: DeploymentSpec) -> str:
    """Everything inside the server block after listen/server_name/TLS lines"""
    variant = variant_for(spec)
    return BODY_BUILDERS[variant](spec) + _common_tail(spec)


def render_http_vhost(spec: DeploymentSpec) -> str:
    upstream = upstream_block(spec) + "\n" if spec.needs_proxy else ""
    return f"""# Nginx server block for {spec.domain}, managed by webserver-setup
{upstream}server {{
    listen 80;
    listen [::]:80;
    server_name {_server_names(spec)};
    set $hsts_header "";

{routing_body(spec)}
}}
"""


def render_ssl_vhost(spec: DeploymentSpec) -> str:
    """HTTPS server block plus the port 80 redirect, replacing the HTTP-only file"""
    upstream = upstream_block(spec) + "\n" if spec.needs_proxy else ""
    return f"""# Nginx server block for {spec.domain} with TLS, managed by webserver-setup
{upstream}server {{
    listen 80;
    listen [::]:80;
    server_name {_server_names(spec)};

    return 301 https://$host$request_uri;
}}

server {{
    listen 443 ssl http2;
    listen [::]:443 ssl http2;
    server_name {_server_names(spec)};

    ssl_certificate {spec.ssl.cert_path};
    ssl_certificate_key {spec.ssl.key_path};
    ssl_protocols {TLS_PROTOCOLS};
    ssl_ciphers {TLS_CIPHERS};
    ssl_prefer_server_ciphers off;
    ssl_session_cache shared:SSL:10m;
    ssl_session_timeout 1d;

    set $hsts_header "{HSTS_VALUE}";

{routing_body(spec)}
}}
"""
