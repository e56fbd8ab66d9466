"""Deterministic renderers for the service unit and the proxy virtual host."""

from typing import List

from relay_reconcile.config import AppConfig

UNIT_TEMPLATE = """[Unit]
Description=IPFS Kubo relay daemon
After=network-online.target
Wants=network-online.target

[Service]
Type=simple
User={user}
Group={group}
Environment=IPFS_PATH={repo}
Environment=IPFS_FD_MAX={fd_max}
{pnet_line}ExecStart={binary} daemon
LimitNOFILE={fd_max}
Restart=always
RestartSec={restart_sec}

[Install]
WantedBy=multi-user.target
"""

LOCATION_TEMPLATE = """
    location = {route} {{
        proxy_pass http://127.0.0.1:{api_port};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
    }}
"""

SITE_TEMPLATE = """server {{
    listen {listen_ip}:{proxy_port} ssl http2;
    server_name {listen_ip};

    ssl_certificate {cert};
    ssl_certificate_key {key};
    ssl_protocols {protocols};
    ssl_conf_command Ciphersuites {ciphersuites};
    ssl_prefer_server_ciphers on;
    ssl_session_cache shared:SSL:10m;
    ssl_session_timeout 10m;

    add_header Strict-Transport-Security "max-age=31536000; includeSubDomains" always;

    auth_basic "{realm}";
    auth_basic_user_file {htpasswd};

    client_max_body_size 100M;
{locations}
    location / {{
        return 403;
    }}
}}
"""


def render_unit(config: AppConfig, private_network: bool) -> str:
    """Render the systemd unit. The pnet enforcement line appears only for a private network."""
    pnet_line = "Environment=LIBP2P_FORCE_PNET=1\n" if private_network else ""
    return UNIT_TEMPLATE.format(
        user=config.SERVICE_USER,
        group=config.SERVICE_GROUP,
        repo=config.REPO_DIR,
        fd_max=config.FD_MAX,
        pnet_line=pnet_line,
        binary=config.BINARY_PATH,
        restart_sec=config.RESTART_SEC,
    )


def render_site(config: AppConfig, listen_ip: str, routes: List[str]) -> str:
    """
    Render the nginx virtual host.

    Each allowed route is an exact-match location proxied to the loopback API.
    Every other path falls through to ``location /`` and is answered with 403.
    """
    locations = "".join(
        LOCATION_TEMPLATE.format(route=route, api_port=config.API_PORT) for route in sorted(routes)
    )
    return SITE_TEMPLATE.format(
        listen_ip=listen_ip,
        proxy_port=config.PROXY_PORT,
        cert=config.CERT_PATH,
        key=config.KEY_PATH,
        protocols=config.TLS_PROTOCOLS,
        ciphersuites=config.TLS_CIPHERSUITES,
        realm=config.AUTH_REALM,
        htpasswd=config.HTPASSWD_PATH,
        locations=locations,
    )
