# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Where the controller gets its NAVER Cloud credentials from.

Each supplier implements one capability, `fetch()`, returning `Credentials`.
`build_supplier` composes them according to the configured secret mode.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace

import requests
from lightkube.core.exceptions import ApiError

from ncloud_lb_controller.config import (
    SECRET_MODE_AUTO,
    SECRET_MODE_ESO,
    SECRET_MODE_KUBERNETES,
    SECRET_MODE_OPENBAO,
    Settings,
)
from ncloud_lb_controller.errors import ConfigError, CredentialsError

logger = logging.getLogger(__name__)

DEFAULT_REGION = "KR"

KEY_API_KEY = "NAVER_CLOUD_API_KEY"
KEY_API_SECRET = "NAVER_CLOUD_API_SECRET"
KEY_REGION = "NAVER_CLOUD_REGION"
KEY_VPC_NO = "NAVER_CLOUD_VPC_NO"
KEY_SUBNET_NO = "NAVER_CLOUD_SUBNET_NO"


@dataclass(frozen=True)
class Credentials:
    api_key: str
    api_secret: str
    region: str = DEFAULT_REGION
    vpc_no: str = ""
    subnet_no: str = ""

    def __repr__(self) -> str:
        return f"Credentials(region={self.region!r}, vpc_no={self.vpc_no!r}, subnet_no={self.subnet_no!r})"

    @property
    def is_complete(self) -> bool:
        return bool(self.region and self.vpc_no and self.subnet_no)


def credentials_from_mapping(data: dict, source: str, default_region: str = DEFAULT_REGION) -> Credentials:
    api_key = str(data.get(KEY_API_KEY) or "")
    api_secret = str(data.get(KEY_API_SECRET) or "")
    if not api_key:
        raise CredentialsError(f"{KEY_API_KEY} not found in {source}")
    if not api_secret:
        raise CredentialsError(f"{KEY_API_SECRET} not found in {source}")
    return Credentials(
        api_key=api_key,
        api_secret=api_secret,
        region=str(data.get(KEY_REGION) or "") or default_region,
        vpc_no=str(data.get(KEY_VPC_NO) or ""),
        subnet_no=str(data.get(KEY_SUBNET_NO) or ""),
    )


class KubernetesSecretSupplier:
    """Reads credentials from a Kubernetes Secret.

    Also used in `eso` mode, where the External Secrets Operator keeps the
    Secret in sync with the external store.
    """

    def __init__(self, store, namespace: str, name: str):
        self.store = store
        self.namespace = namespace
        self.name = name

    def fetch(self) -> Credentials:
        source = f"secret {self.namespace}/{self.name}"
        try:
            data = self.store.read_secret(self.namespace, self.name)
        except ApiError as e:
            raise CredentialsError(f"failed to read {source}: {e}") from e
        creds = credentials_from_mapping(data, source)
        logger.debug("read credentials from %s", source)
        return creds


class OpenBaoSupplier:
    """Reads credentials from OpenBao (Vault API) using AppRole login.

    The AppRole role and secret ids come from a Kubernetes Secret. The login
    token is cached for 80% of its lease.
    """

    def __init__(
        self,
        store,
        *,
        address: str,
        path: str,
        namespace: str,
        approle_secret: str,
        timeout: float = 30.0,
        session=None,
    ):
        self.store = store
        self.address = address.rstrip("/")
        self.path = path.strip("/")
        self.namespace = namespace
        self.approle_secret = approle_secret
        self.timeout = timeout
        self.session = session or requests.Session()
        self._lock = threading.Lock()
        self._token: str | None = None
        self._token_expiry = 0.0

    def _approle_ids(self) -> tuple[str, str]:
        source = f"secret {self.namespace}/{self.approle_secret}"
        try:
            data = self.store.read_secret(self.namespace, self.approle_secret)
        except ApiError as e:
            raise CredentialsError(f"failed to read AppRole {source}: {e}") from e
        role_id = data.get("VAULT_ROLE_ID", "")
        secret_id = data.get("VAULT_SECRET_ID", "")
        if not role_id:
            raise CredentialsError(f"VAULT_ROLE_ID not found in {source}")
        if not secret_id:
            raise CredentialsError(f"VAULT_SECRET_ID not found in {source}")
        return role_id, secret_id

    def _login(self) -> str:
        with self._lock:
            if self._token and time.monotonic() < self._token_expiry:
                return self._token

            role_id, secret_id = self._approle_ids()
            try:
                resp = self.session.post(
                    f"{self.address}/v1/auth/approle/login",
                    json={"role_id": role_id, "secret_id": secret_id},
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                raise CredentialsError(f"OpenBao login request failed: {e}") from e
            if resp.status_code != 200:
                raise CredentialsError(f"OpenBao login failed with status {resp.status_code}: {resp.text}")

            try:
                auth = resp.json()["auth"]
                token = auth["client_token"]
                lease = int(auth.get("lease_duration") or 0)
            except (ValueError, KeyError, TypeError) as e:
                raise CredentialsError(f"unexpected OpenBao login response: {e}") from e

            self._token = token
            self._token_expiry = time.monotonic() + lease * 0.8
            return token

    def fetch(self) -> Credentials:
        token = self._login()
        try:
            resp = self.session.get(
                f"{self.address}/v1/{self.path}",
                headers={"X-Vault-Token": token},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise CredentialsError(f"OpenBao read request failed: {e}") from e
        if resp.status_code != 200:
            raise CredentialsError(f"OpenBao read secret failed with status {resp.status_code}: {resp.text}")
        try:
            data = resp.json()["data"]["data"]
        except (ValueError, KeyError, TypeError) as e:
            raise CredentialsError(f"unexpected OpenBao secret response: {e}") from e
        # region is left empty so the ConfigMap can supply it
        return credentials_from_mapping(data, f"OpenBao path {self.path}", default_region="")


class ConfigMapSupplement:
    """Fills missing region, VPC and subnet from a ConfigMap."""

    def __init__(self, inner, store, namespace: str, name: str):
        self.inner = inner
        self.store = store
        self.namespace = namespace
        self.name = name

    def fetch(self) -> Credentials:
        creds = self.inner.fetch()
        if creds.is_complete:
            return creds
        try:
            data = self.store.read_config_map(self.namespace, self.name)
        except ApiError as e:
            logger.warning("cannot read ConfigMap %s/%s: %s", self.namespace, self.name, e)
            data = None
        if not data:
            return replace(creds, region=creds.region or DEFAULT_REGION)
        return replace(
            creds,
            region=creds.region or data.get(KEY_REGION) or DEFAULT_REGION,
            vpc_no=creds.vpc_no or data.get(KEY_VPC_NO, ""),
            subnet_no=creds.subnet_no or data.get(KEY_SUBNET_NO, ""),
        )


class ChainSupplier:
    """Tries suppliers in order and returns the first success."""

    def __init__(self, suppliers: list):
        if not suppliers:
            raise ConfigError("credential chain must not be empty")
        self.suppliers = list(suppliers)

    def fetch(self) -> Credentials:
        errors = []
        for supplier in self.suppliers:
            try:
                return supplier.fetch()
            except CredentialsError as e:
                logger.info("%s unavailable, falling back: %s", type(supplier).__name__, e)
                errors.append(str(e))
        raise CredentialsError("no credential source succeeded: " + "; ".join(errors))


class CachingSupplier:
    """Keeps the last fetched credentials for `ttl` seconds."""

    def __init__(self, inner, ttl: float):
        self.inner = inner
        self.ttl = ttl
        self._lock = threading.Lock()
        self._cached: Credentials | None = None
        self._expiry = 0.0

    def fetch(self) -> Credentials:
        with self._lock:
            if self._cached is not None and time.monotonic() < self._expiry:
                return self._cached
            creds = self.inner.fetch()
            self._cached = creds
            self._expiry = time.monotonic() + self.ttl
            return creds

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None


def build_supplier(settings: Settings, store):
    """Compose the credential supplier selected by `settings.secret_mode`."""
    mode = settings.secret_mode
    secret = KubernetesSecretSupplier(store, settings.secret_namespace, settings.secret_name)

    def _openbao():
        return ConfigMapSupplement(
            OpenBaoSupplier(
                store,
                address=settings.openbao_address,
                path=settings.openbao_path,
                namespace=settings.secret_namespace,
                approle_secret=settings.openbao_approle_secret,
                timeout=settings.request_timeout_s,
            ),
            store,
            settings.secret_namespace,
            settings.config_map_name,
        )

    if mode == SECRET_MODE_OPENBAO:
        supplier = _openbao()
    elif mode in (SECRET_MODE_ESO, SECRET_MODE_KUBERNETES):
        supplier = secret
    elif mode == SECRET_MODE_AUTO:
        chain = [_openbao(), secret] if settings.openbao_enabled else [secret]
        supplier = ChainSupplier(chain)
    else:
        raise ConfigError(f"unknown secret mode: {mode}")

    logger.info("using %s credential source", mode)
    return CachingSupplier(supplier, settings.credentials_ttl_s)
