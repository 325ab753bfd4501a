"""
HMRC Making Tax Digital API Client

Builds authorization URLs, exchanges and refreshes OAuth2 tokens, and calls
the Business Details and Obligations APIs. Response shapes that vary
between API versions are normalised here so callers only ever see
HMRCBusiness and OAuthTokens.

Documentation: https://developer.service.hmrc.gov.uk/api-documentation
"""

import logging
from datetime import datetime, UTC
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel

from calceum.app.errors import ExternalAPIError
from calceum.app.models import BusinessType
from .fraud_prevention import FraudPreventionContext, VendorInfo, build_fraud_prevention_headers

logger = logging.getLogger(__name__)


ACCEPT_V1 = "application/vnd.hmrc.1.0+json"
ACCEPT_V2 = "application/vnd.hmrc.2.0+json"

# HMRC access tokens live for four hours
DEFAULT_EXPIRES_IN = 4 * 3600

BUSINESS_TYPE_MAP = {
    "self-employment": BusinessType.SOLE_TRADER,
    "uk-property": BusinessType.LANDLORD,
    "foreign-property": BusinessType.LANDLORD,
    "partnership": BusinessType.PARTNERSHIP,
    "limited-company": BusinessType.LIMITED_COMPANY,
    "trust": BusinessType.TRUST,
}


def map_business_type(hmrc_type: Optional[str]) -> BusinessType:
    """Map HMRC's typeOfBusiness vocabulary onto BusinessType (unknown -> other)."""
    return BUSINESS_TYPE_MAP.get(hmrc_type or "", BusinessType.OTHER)


class HMRCConfig(BaseModel):
    client_id: str
    client_secret: str
    api_base_url: str
    auth_base_url: str
    redirect_uri: str
    sandbox_nino: Optional[str] = None
    timeout_seconds: float = 30.0
    vendor: VendorInfo = VendorInfo()

    @classmethod
    def from_settings(cls, settings) -> "HMRCConfig":
        return cls(
            client_id=settings.hmrc_client_id,
            client_secret=settings.hmrc_client_secret,
            api_base_url=settings.hmrc_api_base_url.rstrip("/"),
            auth_base_url=settings.hmrc_auth_base_url.rstrip("/"),
            redirect_uri=settings.hmrc_active_redirect_uri,
            sandbox_nino=settings.hmrc_sandbox_nino or None,
            timeout_seconds=settings.hmrc_request_timeout_seconds,
            vendor=VendorInfo(
                product_name=settings.vendor_product_name,
                version=settings.vendor_version,
                license_id=settings.vendor_license_id,
            ),
        )


class OAuthTokens(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: int  # epoch milliseconds
    token_type: str = "bearer"
    scope: Optional[str] = None

    @classmethod
    def from_token_response(cls, data: Dict[str, Any]) -> "OAuthTokens":
        expires_in = data.get("expires_in") or DEFAULT_EXPIRES_IN
        now_ms = int(datetime.now(UTC).timestamp() * 1000)
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=now_ms + int(expires_in) * 1000,
            token_type=data.get("token_type") or "bearer",
            scope=data.get("scope"),
        )

    def is_expired(self, buffer_seconds: int = 60) -> bool:
        now_ms = int(datetime.now(UTC).timestamp() * 1000)
        return self.expires_at <= now_ms + buffer_seconds * 1000


class HMRCBusiness(BaseModel):
    """One business returned by business discovery, in our vocabulary."""

    business_id: str
    type_of_business: Optional[str] = None
    trading_name: Optional[str] = None
    nino: Optional[str] = None
    utr: Optional[str] = None
    vat_registration_number: Optional[str] = None
    company_registration_number: Optional[str] = None
    raw: Dict[str, Any] = {}

    @property
    def business_type(self) -> BusinessType:
        return map_business_type(self.type_of_business)

    @property
    def display_name(self) -> str:
        return self.trading_name or self.business_id

    @classmethod
    def from_api(cls, item: Dict[str, Any]) -> "HMRCBusiness":
        return cls(
            business_id=item["businessId"],
            type_of_business=item.get("typeOfBusiness"),
            trading_name=item.get("tradingName"),
            nino=item.get("nino"),
            utr=item.get("utr"),
            vat_registration_number=item.get("vatRegistrationNumber"),
            company_registration_number=item.get("companyRegistrationNumber"),
            raw=item,
        )


def normalize_business_list(payload: Any) -> List[HMRCBusiness]:
    """
    Convert any known business-list response shape to HMRCBusiness objects.

    Business Details API v2.0 returns {"listOfBusinesses": [...]}, older
    sandbox responses use {"businesses": [...]}, and some test stubs return
    a bare list. Entries without a businessId are dropped.
    """
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("listOfBusinesses") or payload.get("businesses") or []
    else:
        items = []

    businesses = []
    for item in items:
        if not isinstance(item, dict) or not item.get("businessId"):
            logger.warning("Skipping business entry without businessId")
            continue
        businesses.append(HMRCBusiness.from_api(item))
    return businesses


class HMRCClient:
    """
    HMRC API integration.

    Configuration is injected so the client never reads the environment.
    Pass an httpx transport to route requests somewhere other than the
    network (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        config: HMRCConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        fraud_context: Optional[FraudPreventionContext] = None
    ):
        self.config = config
        self._transport = transport
        self.fraud_context = fraud_context

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout_seconds, transport=self._transport)

    def generate_auth_url(self, state: str, scopes: List[str], redirect_uri: Optional[str] = None) -> str:
        """
        Build the HMRC authorization URL the user is redirected to.

        Args:
            state: CSRF protection token
            scopes: OAuth scopes, joined with spaces
            redirect_uri: Callback URL (defaults to the configured one)
        """
        params = urlencode({
            "response_type": "code",
            "client_id": self.config.client_id,
            "scope": " ".join(scopes),
            "state": state,
            "redirect_uri": redirect_uri or self.config.redirect_uri,
        })
        return f"{self.config.auth_base_url}/oauth/authorize?{params}"

    async def exchange_code_for_tokens(self, code: str, redirect_uri: Optional[str] = None) -> OAuthTokens:
        """
        Exchange an authorization code for access/refresh tokens.

        Codes are single use: a second exchange of the same code fails.

        Raises:
            ExternalAPIError: If HMRC rejects the exchange
        """
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
                "redirect_uri": redirect_uri or self.config.redirect_uri,
            },
            failure_label="Token exchange failed",
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """
        Refresh an expired access token.

        Raises:
            ExternalAPIError: If HMRC rejects the refresh token
        """
        return await self._token_request(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.config.client_id,
                "client_secret": self.config.client_secret,
            },
            failure_label="Token refresh failed",
        )

    async def _token_request(self, form: Dict[str, str], failure_label: str) -> OAuthTokens:
        token_url = f"{self.config.api_base_url}/oauth/token"

        try:
            async with self._http_client() as client:
                response = await client.post(
                    token_url,
                    data=form,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as e:
            raise ExternalAPIError(f"{failure_label}: {e}") from e

        if not response.is_success:
            error = _parse_body(response)
            if isinstance(error, dict):
                detail = error.get("error_description") or error.get("error") or response.reason_phrase
                code = error.get("error")
            else:
                detail, code = response.reason_phrase, None
            logger.error(f"{failure_label} - Status: {response.status_code}, error: {code}")
            raise ExternalAPIError(f"{failure_label}: {detail}", upstream_status=response.status_code, code=code)

        data = response.json()
        if not isinstance(data, dict) or not data.get("access_token"):
            raise ExternalAPIError(f"{failure_label}: no access_token in response", upstream_status=response.status_code)

        return OAuthTokens.from_token_response(data)

    async def make_request(
        self,
        endpoint: str,
        method: str,
        access_token: str,
        body: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None
    ) -> Any:
        """
        Make an authenticated request to the HMRC API.

        Fraud prevention headers are attached to every call.

        Returns:
            Parsed JSON body (or raw text when the body is not JSON)

        Raises:
            ExternalAPIError: On transport failure or a non-2xx response
        """
        request_headers = build_fraud_prevention_headers(self.fraud_context, self.config.vendor)
        request_headers.update({
            "Authorization": f"Bearer {access_token}",
            "Accept": ACCEPT_V1,
        })
        if headers:
            request_headers.update(headers)

        send_body = body is not None and method.upper() != "GET"

        try:
            async with self._http_client() as client:
                response = await client.request(
                    method.upper(),
                    f"{self.config.api_base_url}{endpoint}",
                    headers=request_headers,
                    params=params,
                    json=body if send_body else None,
                )
        except httpx.HTTPError as e:
            raise ExternalAPIError(f"Request to {endpoint} failed: {e}") from e

        data = _parse_body(response)

        if not response.is_success:
            message = None
            errors = None
            if isinstance(data, dict):
                message = data.get("message")
                errors = data.get("errors")
            logger.error(f"HMRC API error - {method.upper()} {endpoint} - Status: {response.status_code}")
            raise ExternalAPIError(
                message or f"Request failed with status {response.status_code}",
                upstream_status=response.status_code,
                code=data.get("code") if isinstance(data, dict) else str(response.status_code),
                errors=errors,
            )

        return data

    async def list_businesses(self, access_token: str, nino: Optional[str] = None) -> List[HMRCBusiness]:
        """
        List the businesses the authorised user has registered with HMRC.

        Args:
            access_token: Valid OAuth access token
            nino: National Insurance number to list for (sandbox NINO if omitted)
        """
        nino = nino or self.config.sandbox_nino
        if not nino:
            raise ExternalAPIError("No NINO available to list businesses")

        result = await self.make_request(
            f"/individuals/business/details/{nino}/list",
            "GET",
            access_token,
            headers={"Accept": ACCEPT_V2},
        )
        businesses = normalize_business_list(result)
        logger.info(f"Business discovery returned {len(businesses)} businesses")
        return businesses

    async def get_business_details(self, access_token: str, nino: str, business_id: str) -> Dict[str, Any]:
        result = await self.make_request(
            f"/individuals/business/details/{nino}/{business_id}",
            "GET",
            access_token,
            headers={"Accept": ACCEPT_V2},
        )
        return result if isinstance(result, dict) else {}

    async def get_obligations(
        self,
        access_token: str,
        nino: str,
        business_id: str,
        type_of_obligation: str = "income-and-expenditure",
        from_date: Optional[str] = None,
        to_date: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Fetch obligations (filing periods and deadlines) for a business.

        Args:
            from_date: YYYY-MM-DD lower bound (optional)
            to_date: YYYY-MM-DD upper bound (optional)
        """
        params = {"businessId": business_id}
        if from_date:
            params["from"] = from_date
        if to_date:
            params["to"] = to_date

        result = await self.make_request(
            f"/obligations/details/{nino}/{type_of_obligation}",
            "GET",
            access_token,
            headers={"Accept": ACCEPT_V2},
            params=params,
        )
        return result if isinstance(result, dict) else {}


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
