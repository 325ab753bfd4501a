"""
HMRC Fraud Prevention Headers

HMRC requires Gov-Client-* and Gov-Vendor-* headers on every API call made
on behalf of a user. For the WEB_APP_VIA_SERVER connection method most of
these describe the user's browser, so the SPA forwards them on its requests
to us and we pass them through. Anything the browser did not send falls
back to a static default.

Documentation: https://developer.service.hmrc.gov.uk/guides/fraud-prevention/
"""

import logging
from typing import Dict, Mapping, Optional
from urllib.parse import quote

from pydantic import BaseModel

logger = logging.getLogger(__name__)


CONNECTION_METHOD = "WEB_APP_VIA_SERVER"

# Browser-supplied headers that are passed through unchanged when present
PASSTHROUGH_HEADERS = (
    "Gov-Client-Device-ID",
    "Gov-Client-Timezone",
    "Gov-Client-Window-Size",
    "Gov-Client-Browser-Plugins",
    "Gov-Client-Browser-Do-Not-Track",
    "Gov-Client-Screens",
    "Gov-Client-Multi-Factor",
)

DEFAULT_CLIENT_HEADERS = {
    "Gov-Client-Device-ID": "device-id-placeholder",
    "Gov-Client-Timezone": "UTC+00:00",
    "Gov-Client-Window-Size": "width=1920&height=1080",
    "Gov-Client-Browser-Plugins": "none",
    "Gov-Client-Browser-Do-Not-Track": "false",
    "Gov-Client-Screens": "width=1920&height=1080&colour-depth=24",
    "Gov-Client-Multi-Factor": "type=AUTH_CODE",
}


class VendorInfo(BaseModel):
    product_name: str = "calceum"
    version: str = "1.0.0"
    license_id: str = "calceum-license"


class FraudPreventionContext(BaseModel):
    """Per-request client details collected from the inbound HTTP request."""

    user_id: Optional[str] = None
    user_agent: Optional[str] = None
    public_ip: Optional[str] = None
    forwarded_headers: Dict[str, str] = {}

    @classmethod
    def from_request_headers(
        cls,
        headers: Mapping[str, str],
        client_host: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> "FraudPreventionContext":
        """
        Build a context from the headers of the caller's request.

        The first address in X-Forwarded-For wins over the socket peer.
        """
        lowered = {k.lower(): v for k, v in headers.items()}

        forwarded_for = lowered.get("x-forwarded-for", "")
        public_ip = forwarded_for.split(",")[0].strip() if forwarded_for else client_host

        forwarded = {}
        for name in PASSTHROUGH_HEADERS:
            value = lowered.get(name.lower())
            if value:
                forwarded[name] = value

        return cls(
            user_id=user_id,
            user_agent=lowered.get("user-agent"),
            public_ip=public_ip,
            forwarded_headers=forwarded,
        )

    @property
    def missing_headers(self):
        return [name for name in PASSTHROUGH_HEADERS if name not in self.forwarded_headers]


def build_fraud_prevention_headers(
    context: Optional[FraudPreventionContext],
    vendor: VendorInfo
) -> Dict[str, str]:
    """
    Render the complete Gov-Client-*/Gov-Vendor-* header set.

    Args:
        context: Client details for the current request (None for
            background calls, which use defaults throughout)
        vendor: Product details for the Gov-Vendor-* headers

    Returns:
        Header dict to merge into the outbound request
    """
    context = context or FraudPreventionContext()

    headers = {"Gov-Client-Connection-Method": CONNECTION_METHOD}
    headers.update(DEFAULT_CLIENT_HEADERS)
    headers.update(context.forwarded_headers)

    if context.missing_headers:
        logger.debug(f"Using default fraud prevention values for: {', '.join(context.missing_headers)}")

    headers["Gov-Client-User-IDs"] = f"{vendor.product_name}={quote(context.user_id or 'anonymous')}"
    headers["Gov-Client-Browser-JS-User-Agent"] = context.user_agent or "unknown"
    if context.public_ip:
        headers["Gov-Client-Public-IP"] = context.public_ip

    headers["Gov-Vendor-Version"] = f"{vendor.product_name}={vendor.version}"
    headers["Gov-Vendor-License-IDs"] = f"{vendor.product_name}={quote(vendor.license_id)}"
    headers["Gov-Vendor-Product-Name"] = quote(vendor.product_name)

    return headers
