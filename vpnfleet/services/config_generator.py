# vpnfleet/services/config_generator.py
"""Client config rendering and QR codes. Pure functions, no I/O."""

import base64
import io
from typing import List, Optional

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from vpnfleet.models.vpn import Device, VpnServer, VpnType, WireGuardConfig
from vpnfleet.settings import settings


def generate_config(
    device: Device,
    server: VpnServer,
    server_public_key: Optional[str] = None,
    dns: Optional[List[str]] = None,
) -> str:
    """
    Render the WireGuard client config of a device.

    Needs the device's private key and VPN address, which only exist on the
    freshly provisioned record.
    """
    if device.private_key is None or not device.vpn_ip:
        raise ValueError(f"Device {device.name} has no private key or VPN address to render")

    wg = server.wireguard or WireGuardConfig()
    dns_servers = settings.client_dns if dns is None else dns
    address = device.vpn_ip.split("/")[0]

    lines = [
        "[Interface]",
        f"PrivateKey = {device.private_key.get_secret_value()}",
        f"Address = {address}/32",
    ]
    if dns_servers:
        lines.append(f"DNS = {', '.join(dns_servers)}")

    lines += [
        "",
        "[Peer]",
        f"PublicKey = {server_public_key or wg.server_public_key or ''}",
        f"Endpoint = {server.host}:{wg.port}",
        "AllowedIPs = 0.0.0.0/0",
        f"PersistentKeepalive = {settings.persistent_keepalive}",
    ]

    return "\n".join(lines) + "\n"


def generate_qr_code_png(text: str) -> bytes:
    """Encode ``text`` as a PNG QR code."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECT_M,
        box_size=settings.qr_box_size,
        border=settings.qr_border,
    )
    qr.add_data(text)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def generate_qr_code(text: str) -> str:
    """Encode ``text`` as a QR code PNG data URL, ready for an <img> tag."""
    encoded = base64.b64encode(generate_qr_code_png(text)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def config_filename(device: Device, vpn_type: VpnType) -> str:
    if vpn_type == VpnType.OUTLINE:
        return f"{device.name}-outline.txt"
    return f"{device.name}.conf"
