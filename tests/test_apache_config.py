# ABOUTME: Tests for Apache virtual host generation
# ABOUTME: Validates proxy, static and PHP bodies, cache rule ordering and the TLS virtual host

import pytest

from webserver_setup import apache_config
from webserver_setup.models import AppConfig
from webserver_setup.resolver import resolve


@pytest.fixture
def proxied_spec(answers):
    return resolve(answers(web_server="apache", app_kind="python", ssl_mode="selfsigned"))


class TestApacheVhost:
    """Test Apache HTTP virtual hosts"""

    def test_paths(self, proxied_spec):
        config = AppConfig()
        assert apache_config.site_name(proxied_spec) == "example.com.conf"
        assert apache_config.vhost_path(proxied_spec, config) == "/etc/apache2/sites-available/example.com.conf"

    def test_reverse_proxy(self, proxied_spec):
        content = apache_config.render_http_vhost(proxied_spec)
        assert "<VirtualHost *:80>" in content
        assert "ServerName example.com" in content
        assert "ServerAlias www.example.com" in content
        assert "ProxyPass / http://127.0.0.1:8000/" in content
        assert '"ws://127.0.0.1:8000/$1" [P,L]' in content
        assert "DocumentRoot" not in content

    def test_subdomain_has_no_alias_line(self, answers):
        spec = resolve(answers(web_server="apache", domain="app.example.com", app_kind="static"))
        assert "ServerAlias" not in apache_config.render_http_vhost(spec)

    def test_spa_rewrite(self, answers):
        content = apache_config.render_http_vhost(resolve(answers(web_server="apache", app_kind="angular")))
        assert "DocumentRoot /var/www/example.com/dist/app/browser" in content
        assert "RewriteRule . /index.html [L]" in content

    def test_static_site_rewrites_to_index(self, answers):
        content = apache_config.render_http_vhost(resolve(answers(web_server="apache", app_kind="static")))
        assert "RewriteRule . /index.html [L]" in content

    def test_php_site_has_no_spa_rewrite(self, answers):
        content = apache_config.render_http_vhost(resolve(answers(web_server="apache", app_kind="php")))
        assert "RewriteRule . /index.html" not in content

    def test_cache_rules_highest_precedence_last(self, answers):
        content = apache_config.render_http_vhost(resolve(answers(web_server="apache", app_kind="react")))
        hashed = content.index("# Cache policy: hashed assets")
        generic = content.index("# Cache policy: scripts and styles")
        html = content.index("# Cache policy: html")
        assert html < generic < hashed
        assert '<FilesMatch "(?i)\\.(js|css)$">' in content

    def test_php_fpm_handler(self, answers):
        content = apache_config.render_http_vhost(resolve(answers(web_server="apache", app_kind="php")))
        assert 'SetHandler "proxy:unix:/run/php/php8.3-fpm.sock|fcgi://localhost"' in content
        assert "AllowOverride All" in content


class TestApacheSslVhost:
    """Test the HTTPS virtual host"""

    def test_redirect_and_tls(self, proxied_spec):
        content = apache_config.render_ssl_vhost(proxied_spec)
        assert "RewriteRule ^(.*)$ https://%{HTTP_HOST}$1 [R=301,L]" in content
        assert "<VirtualHost *:443>" in content
        assert "SSLEngine on" in content
        assert f"SSLCertificateFile {proxied_spec.ssl.cert_path}" in content
        assert 'RequestHeader set X-Forwarded-Proto "https"' in content

    def test_static_site_has_no_forwarded_proto(self, answers):
        spec = resolve(answers(web_server="apache", app_kind="static", ssl_mode="selfsigned"))
        assert "X-Forwarded-Proto" not in apache_config.render_ssl_vhost(spec)

    def test_shares_routing_body_with_http_vhost(self, proxied_spec):
        body = apache_config.routing_body(proxied_spec)
        assert body in apache_config.render_http_vhost(proxied_spec)
        assert body in apache_config.render_ssl_vhost(proxied_spec)
