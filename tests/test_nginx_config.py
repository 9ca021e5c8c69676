# ABOUTME: Tests for nginx server block generation
# ABOUTME: Validates proxy, static and PHP bodies and the shared HTTP/HTTPS routing body

import pytest

from webserver_setup import nginx_config
from webserver_setup.models import AppConfig
from webserver_setup.resolver import resolve


@pytest.fixture
def proxied_spec(answers):
    return resolve(answers(app_kind="nodejs", port=8080, ssl_mode="selfsigned"))


class TestNginxVhost:
    """Test nginx HTTP server blocks"""

    def test_paths(self, proxied_spec):
        config = AppConfig()
        assert nginx_config.vhost_path(proxied_spec, config) == "/etc/nginx/sites-available/example.com"

    def test_reverse_proxy(self, proxied_spec):
        content = nginx_config.render_http_vhost(proxied_spec)
        assert "upstream example_com_backend {" in content
        assert "server 127.0.0.1:8080;" in content
        assert "proxy_pass http://example_com_backend;" in content
        assert "proxy_set_header Upgrade $http_upgrade;" in content
        assert "proxy_set_header Connection $example_com_backend_connection;" in content
        assert "map $http_upgrade $example_com_backend_connection {" in content
        assert "Connection 'upgrade'" not in content
        assert "server_name example.com www.example.com;" in content
        assert "root " not in content

    def test_spa_static_site(self, answers):
        spec = resolve(answers(app_kind="react"))
        content = nginx_config.render_http_vhost(spec)
        assert "root /var/www/example.com/dist;" in content
        assert "try_files $uri $uri/ /index.html;" in content
        assert "upstream" not in content
        assert "location ~* \\.map$" in content

    def test_plain_static_site_falls_back_to_index(self, answers):
        content = nginx_config.render_http_vhost(resolve(answers(app_kind="static")))
        assert "try_files $uri $uri/ /index.html;" in content
        assert "=404" not in content

    def test_cache_locations_in_precedence_order(self, answers):
        content = nginx_config.render_http_vhost(resolve(answers(app_kind="vue")))
        hashed = content.index("# Cache policy: hashed assets")
        generic = content.index("# Cache policy: scripts and styles")
        assert hashed < generic
        # Regex locations are quoted so the braces survive nginx parsing
        assert 'location ~* "\\.[a-f0-9]{8,}\\.(js|css)$"' in content

    def test_php(self, answers):
        spec = resolve(answers(app_kind="php", php_version="8.2"))
        content = nginx_config.render_http_vhost(spec)
        assert "root /var/www/example.com/public;" in content
        assert "fastcgi_pass unix:/run/php/php8.2-fpm.sock;" in content
        assert "try_files $uri $uri/ /index.php?$query_string;" in content
        assert "location ^~ /.well-known/" in content

    def test_logs_and_headers(self, proxied_spec):
        content = nginx_config.render_http_vhost(proxied_spec)
        assert "access_log /var/log/nginx/example.com_access.log;" in content
        assert 'add_header X-Frame-Options "SAMEORIGIN" always;' in content
        assert "gzip on;" in content

    def test_connection_variable_is_a_valid_nginx_name(self, answers):
        spec = resolve(answers(app_kind="nodejs", domain="my-shop.example.com"))
        assert nginx_config.connection_variable(spec) == "$my_shop_example_com_backend_connection"

    def test_cache_locations_repeat_security_headers(self, answers):
        content = nginx_config.render_http_vhost(resolve(answers(app_kind="react")))
        html = content[content.index('location ~* "\\.html$" {'):]
        html = html[:html.index("    }")]
        assert 'add_header Cache-Control "no-cache, no-store, must-revalidate";' in html
        assert 'add_header X-Content-Type-Options "nosniff" always;' in html
        assert "add_header Strict-Transport-Security $hsts_header always;" in html
        # Plain HTTP never sends HSTS
        assert 'set $hsts_header "";' in content
        assert content.count('add_header X-Frame-Options "SAMEORIGIN" always;') == 6


class TestNginxSslVhost:
    """Test the HTTPS server block"""

    def test_redirect_and_tls(self, proxied_spec):
        content = nginx_config.render_ssl_vhost(proxied_spec)
        assert "return 301 https://$host$request_uri;" in content
        assert "listen 443 ssl http2;" in content
        assert f"ssl_certificate {proxied_spec.ssl.cert_path};" in content
        assert f"ssl_certificate_key {proxied_spec.ssl.key_path};" in content
        assert "Strict-Transport-Security" in content
        assert content.count("upstream example_com_backend {") == 1

    def test_hsts_reaches_cache_locations(self, answers):
        spec = resolve(answers(app_kind="react", ssl_mode="selfsigned"))
        content = nginx_config.render_ssl_vhost(spec)
        assert 'set $hsts_header "max-age=31536000; includeSubDomains";' in content
        html = content[content.index('location ~* "\\.html$" {'):]
        html = html[:html.index("    }")]
        assert "add_header Strict-Transport-Security $hsts_header always;" in html

    def test_shares_routing_body_with_http_vhost(self, proxied_spec):
        body = nginx_config.routing_body(proxied_spec)
        assert body in nginx_config.render_http_vhost(proxied_spec)
        assert body in nginx_config.render_ssl_vhost(proxied_spec)
        assert nginx_config.render_ssl_vhost(proxied_spec).count(body) == 1

    def test_balanced_braces(self, answers):
        for kind in ("nodejs", "php", "react", "static"):
            spec = resolve(answers(app_kind=kind, ssl_mode="selfsigned"))
            for content in (nginx_config.render_http_vhost(spec), nginx_config.render_ssl_vhost(spec)):
                # Quoted regexes carry their own braces
                unquoted = content.replace("{8,}", "")
                assert unquoted.count("{") == unquoted.count("}")
