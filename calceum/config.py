from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    database_url: str
    environment: str = "production"

    # Bearer tokens issued by the identity provider
    auth_jwt_secret: str
    auth_jwt_algorithm: str = "HS256"
    auth_jwt_audience: str = "authenticated"

    # HMRC Making Tax Digital
    hmrc_client_id: str = ""
    hmrc_client_secret: str = ""
    hmrc_api_base_url: str = "https://test-api.service.hmrc.gov.uk"
    hmrc_auth_base_url: str = "https://test-www.tax.service.gov.uk"
    hmrc_redirect_uri: str = "https://app.calceum.com/self-assessment/callback"
    hmrc_redirect_uri_dev: str = "http://localhost:4011/self-assessment/callback"
    hmrc_default_scopes: List[str] = ["read:self-assessment", "write:self-assessment"]
    hmrc_oauth_state_ttl_minutes: int = 10
    hmrc_encryption_key: str = ""
    hmrc_sandbox_nino: str = "NE101272A"
    hmrc_request_timeout_seconds: float = 30.0

    # Gov-Vendor-* fraud prevention headers
    vendor_product_name: str = "calceum"
    vendor_version: str = "1.0.0"
    vendor_license_id: str = "calceum-license"

    class Config:
        env_file = ".env"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"

    @property
    def hmrc_active_redirect_uri(self) -> str:
        return self.hmrc_redirect_uri_dev if self.is_development else self.hmrc_redirect_uri


@lru_cache()
def get_settings():
    return Settings()
