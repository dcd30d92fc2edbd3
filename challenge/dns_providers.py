"""
DNS-01 challenge providers.

Provides:
  DNSChallengeProvider (ABC)
      create_record(zone, name, value) / remove_record(zone, name, value)
      plus zone_for(domain) and the public resolvers to check propagation with.

  CloudflareProvider — uses the `cloudflare` library (>=3.0,<4)
  Route53Provider    — uses `boto3`
  GoDaddyProvider    — GoDaddy Domains REST API via `requests`
  DNSPodProvider     — DNSPod token API (dnsapi.cn) via `requests`
  AliyunProvider     — Alibaba Cloud DNS RPC API via `requests`

  PROVIDER_TYPES / make_dns_provider(record, encryption_key)
      Registry keyed by the stored provider type and the factory that
      decrypts the stored credential blob and instantiates the variant.

Names passed to create_record/remove_record are fully qualified
(``_acme-challenge.www.example.com``, no trailing dot); each provider
derives whatever relative form its API wants from the zone.

Every failure is raised as ProviderError so the coordinator can treat
provider problems uniformly.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import ClassVar, Dict, List, Tuple, Type
from urllib.parse import quote

import requests

from lifecycle.credentials import decrypt_credentials
from lifecycle.errors import ProviderError
from lifecycle.models import DNSProvider, ProviderType

logger = logging.getLogger(__name__)

ACME_CHALLENGE_LABEL = "_acme-challenge"
_HTTP_TIMEOUT = 30


def challenge_record_name(domain: str) -> str:
    """Return the full _acme-challenge DNS name for a domain (wildcards share the base name)."""
    if domain.startswith("*."):
        domain = domain[2:]
    return f"{ACME_CHALLENGE_LABEL}.{domain}"


def relative_name(zone: str, name: str) -> str:
    """``_acme-challenge.www.example.com`` in ``example.com`` → ``_acme-challenge.www``."""
    suffix = "." + zone
    if name.endswith(suffix):
        return name[: -len(suffix)]
    if name == zone:
        return "@"
    raise ProviderError(f"record {name} is not inside zone {zone}")


# ─── Provider ABC ─────────────────────────────────────────────────────────────


class DNSChallengeProvider(ABC):
    """Abstract base for DNS-01 TXT record management."""

    type: ClassVar[ProviderType]
    required_credentials: ClassVar[Tuple[str, ...]] = ()
    # Public recursive resolvers, in the order propagation checks should ask them
    resolvers: ClassVar[Tuple[str, ...]] = ("8.8.8.8", "1.1.1.1", "223.5.5.5")

    def __init__(self, credentials: dict) -> None:
        missing = [k for k in self.required_credentials if not str(credentials.get(k, "")).strip()]
        if missing:
            raise ProviderError(
                f"{self.type.value} provider is missing credential(s): {', '.join(missing)}"
            )
        self.credentials = {k: v.strip() if isinstance(v, str) else v for k, v in credentials.items()}

    def zone_for(self, domain: str) -> str:
        """
        Return the DNS zone that holds *domain*'s challenge record.

        Default: an explicit "zone" credential, else the last two labels.
        Providers that can list zones override this with a discovery walk.
        """
        explicit = self.credentials.get("zone")
        if explicit:
            return explicit.rstrip(".")
        labels = domain.lstrip("*.").rstrip(".").split(".")
        return ".".join(labels[-2:])

    @abstractmethod
    def create_record(self, zone: str, name: str, value: str) -> None:
        """Create TXT *name* = *value* in *zone*; must tolerate an identical existing record."""

    @abstractmethod
    def remove_record(self, zone: str, name: str, value: str) -> None:
        """Remove TXT *name* = *value* from *zone*; a record that is already gone is not an error."""


# ─── Cloudflare ───────────────────────────────────────────────────────────────


class CloudflareProvider(DNSChallengeProvider):
    """DNS-01 provider backed by the Cloudflare API (cloudflare>=3.0,<4)."""

    type = ProviderType.CLOUDFLARE
    required_credentials = ("api_token",)
    resolvers = ("1.1.1.1", "8.8.8.8", "223.5.5.5")
    ttl = 120

    def __init__(self, credentials: dict) -> None:
        super().__init__(credentials)
        try:
            import cloudflare as cf_mod
        except ImportError as exc:
            raise ProviderError(
                "cloudflare package is required for cloudflare DNS providers. "
                "Install it with: pip install 'letsync[dns-cloudflare]'"
            ) from exc
        self._cf_mod = cf_mod
        self._zone_ids: Dict[str, str] = {}

    def _get_client(self):
        return self._cf_mod.Cloudflare(api_token=self.credentials["api_token"])

    def zone_for(self, domain: str) -> str:
        if self.credentials.get("zone"):
            return super().zone_for(domain)
        cf = self._get_client()
        parts = domain.lstrip("*.").split(".")
        # Walk from most-specific to least-specific label group
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:])
            try:
                zones = list(cf.zones.list(name=candidate))
            except Exception as exc:
                raise ProviderError(f"Cloudflare zone lookup for {candidate} failed: {exc}") from exc
            if zones:
                self._zone_ids[candidate] = zones[0].id
                return candidate
        raise ProviderError(f"Could not discover Cloudflare zone for domain: {domain}")

    def _zone_id(self, cf, zone: str) -> str:
        if zone not in self._zone_ids:
            zones = list(cf.zones.list(name=zone))
            if not zones:
                raise ProviderError(f"Cloudflare zone {zone} not found")
            self._zone_ids[zone] = zones[0].id
        return self._zone_ids[zone]

    def create_record(self, zone: str, name: str, value: str) -> None:
        cf = self._get_client()
        try:
            zone_id = self._zone_id(cf, zone)
            existing = list(cf.dns.records.list(zone_id=zone_id, name=name, type="TXT"))
            if any(getattr(r, "content", None) == value for r in existing):
                logger.debug("TXT record %s already exists — skipping create", name)
                return
            cf.dns.records.create(zone_id=zone_id, type="TXT", name=name, content=value, ttl=self.ttl)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"Cloudflare create TXT {name} failed: {exc}") from exc
        logger.info("Created Cloudflare TXT record %s", name)

    def remove_record(self, zone: str, name: str, value: str) -> None:
        cf = self._get_client()
        try:
            zone_id = self._zone_id(cf, zone)
            for record in cf.dns.records.list(zone_id=zone_id, name=name, type="TXT"):
                if getattr(record, "content", None) == value:
                    cf.dns.records.delete(record.id, zone_id=zone_id)
                    logger.info("Deleted Cloudflare TXT record %s", name)
                    return
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"Cloudflare delete TXT {name} failed: {exc}") from exc
        logger.debug("TXT record %s not found, nothing to delete", name)


# ─── Route 53 ─────────────────────────────────────────────────────────────────


class Route53Provider(DNSChallengeProvider):
    """DNS-01 provider backed by AWS Route 53 (boto3)."""

    type = ProviderType.ROUTE53
    required_credentials = ("access_key_id", "secret_access_key")
    ttl = 60

    def __init__(self, credentials: dict) -> None:
        super().__init__(credentials)
        try:
            import boto3
        except ImportError as exc:
            raise ProviderError(
                "boto3 package is required for route53 DNS providers. "
                "Install it with: pip install 'letsync[dns-route53]'"
            ) from exc
        self._boto3 = boto3
        self._zone_ids: Dict[str, str] = {}
        # UPSERT replaces the whole record set, so values sharing a name are written together
        self._values: Dict[str, List[str]] = {}
        if self.credentials.get("hosted_zone_id") and self.credentials.get("zone"):
            self._zone_ids[self.credentials["zone"].rstrip(".")] = self.credentials["hosted_zone_id"]

    def _get_client(self):
        return self._boto3.client(
            "route53",
            region_name=self.credentials.get("region") or "us-east-1",
            aws_access_key_id=self.credentials["access_key_id"],
            aws_secret_access_key=self.credentials["secret_access_key"],
        )

    def zone_for(self, domain: str) -> str:
        if self.credentials.get("zone"):
            return super().zone_for(domain)
        client = self._get_client()
        parts = domain.lstrip("*.").split(".")
        for i in range(len(parts) - 1):
            candidate = ".".join(parts[i:]) + "."
            try:
                response = client.list_hosted_zones_by_name(DNSName=candidate, MaxItems="1")
            except Exception as exc:
                raise ProviderError(f"Route53 zone lookup for {candidate} failed: {exc}") from exc
            zones = response.get("HostedZones", [])
            if zones and zones[0]["Name"] == candidate:
                # Extract bare ID from "/hostedzone/ZXXXXX"
                self._zone_ids[candidate.rstrip(".")] = zones[0]["Id"].split("/")[-1]
                return candidate.rstrip(".")
        raise ProviderError(f"Could not discover Route53 hosted zone for domain: {domain}")

    def _hosted_zone_id(self, client, zone: str) -> str:
        if zone not in self._zone_ids:
            response = client.list_hosted_zones_by_name(DNSName=zone + ".", MaxItems="1")
            zones = response.get("HostedZones", [])
            if not zones or zones[0]["Name"] != zone + ".":
                raise ProviderError(f"Route53 hosted zone {zone} not found")
            self._zone_ids[zone] = zones[0]["Id"].split("/")[-1]
        return self._zone_ids[zone]

    def _change(self, action: str, zone: str, name: str, values: List[str]) -> None:
        client = self._get_client()
        client.change_resource_record_sets(
            HostedZoneId=self._hosted_zone_id(client, zone),
            ChangeBatch={
                "Changes": [
                    {
                        "Action": action,
                        "ResourceRecordSet": {
                            "Name": name + ".",
                            "Type": "TXT",
                            "TTL": self.ttl,
                            # Route53 requires TXT values wrapped in double-quotes
                            "ResourceRecords": [{"Value": f'"{v}"'} for v in values],
                        },
                    }
                ]
            },
        )

    def create_record(self, zone: str, name: str, value: str) -> None:
        try:
            values = self._values.setdefault(name, [])
            if value not in values:
                values.append(value)
            self._change("UPSERT", zone, name, values)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(f"Route53 UPSERT TXT {name} failed: {exc}") from exc
        logger.info("Created/updated Route53 TXT record %s", name)

    def remove_record(self, zone: str, name: str, value: str) -> None:
        remaining = [v for v in self._values.pop(name, []) if v != value]
        try:
            if remaining:
                self._values[name] = remaining
                self._change("UPSERT", zone, name, remaining)
            else:
                self._change("DELETE", zone, name, [value])
        except ProviderError:
            raise
        except Exception as exc:
            if "InvalidChangeBatch" in str(exc) and "not found" in str(exc):
                logger.debug("TXT record %s not found, nothing to delete", name)
                return
            raise ProviderError(f"Route53 DELETE TXT {name} failed: {exc}") from exc
        logger.info("Deleted Route53 TXT record %s", name)


# ─── REST-over-requests providers ─────────────────────────────────────────────


class _HttpProvider(DNSChallengeProvider):
    """Shared requests.Session plumbing for providers without an SDK."""

    def __init__(self, credentials: dict, session: requests.Session | None = None) -> None:
        super().__init__(credentials)
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "letsync/1.0"})

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            return self._session.request(method, url, timeout=_HTTP_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise ProviderError(f"{self.type.value} API request failed: {exc}") from exc


class GoDaddyProvider(_HttpProvider):
    """DNS-01 provider backed by the GoDaddy Domains API (v1)."""

    type = ProviderType.GODADDY
    required_credentials = ("api_key", "api_secret")
    base_url = "https://api.godaddy.com"
    ttl = 600

    def _headers(self) -> dict:
        return {
            "Authorization": f"sso-key {self.credentials['api_key']}:{self.credentials['api_secret']}",
            "Accept": "application/json",
        }

    def _check(self, resp: requests.Response, what: str) -> None:
        if resp.status_code >= 400:
            try:
                message = resp.json().get("message", resp.text)
            except ValueError:
                message = resp.text
            raise ProviderError(f"GoDaddy {what} failed (HTTP {resp.status_code}): {message}")

    def _records_url(self, zone: str, sub: str) -> str:
        return f"{self.base_url}/v1/domains/{zone}/records/TXT/{sub}"

    def _existing(self, zone: str, sub: str) -> list:
        resp = self._request("GET", self._records_url(zone, sub), headers=self._headers())
        if resp.status_code == 404:
            return []
        self._check(resp, f"list TXT {sub}.{zone}")
        return resp.json()

    def create_record(self, zone: str, name: str, value: str) -> None:
        sub = relative_name(zone, name)
        if any(r.get("data") == value for r in self._existing(zone, sub)):
            logger.debug("TXT record %s already exists — skipping create", name)
            return
        resp = self._request(
            "PATCH",
            f"{self.base_url}/v1/domains/{zone}/records",
            headers=self._headers(),
            json=[{"type": "TXT", "name": sub, "data": value, "ttl": self.ttl}],
        )
        self._check(resp, f"create TXT {name}")
        logger.info("Created GoDaddy TXT record %s", name)

    def remove_record(self, zone: str, name: str, value: str) -> None:
        sub = relative_name(zone, name)
        existing = self._existing(zone, sub)
        remaining = [r for r in existing if r.get("data") != value]
        if len(remaining) == len(existing):
            logger.debug("TXT record %s not found, nothing to delete", name)
            return
        if remaining:
            # Other TXT values under the same name (e.g. a concurrent wildcard order) survive
            resp = self._request(
                "PUT",
                self._records_url(zone, sub),
                headers=self._headers(),
                json=[{"data": r["data"], "ttl": r.get("ttl", self.ttl)} for r in remaining],
            )
        else:
            resp = self._request("DELETE", self._records_url(zone, sub), headers=self._headers())
        self._check(resp, f"delete TXT {name}")
        logger.info("Deleted GoDaddy TXT record %s", name)


class DNSPodProvider(_HttpProvider):
    """DNS-01 provider backed by the DNSPod token API (login_token = "ID,Token")."""

    type = ProviderType.DNSPOD
    required_credentials = ("api_id", "api_token")
    resolvers = ("119.29.29.29", "223.5.5.5", "8.8.8.8")
    base_url = "https://dnsapi.cn"
    ttl = 600

    _NO_RECORDS = "10"

    def _call(self, action: str, **params) -> dict:
        data = {
            "login_token": f"{self.credentials['api_id']},{self.credentials['api_token']}",
            "format": "json",
            "lang": "en",
            **params,
        }
        resp = self._request("POST", f"{self.base_url}/{action}", data=data)
        if resp.status_code >= 400:
            raise ProviderError(f"DNSPod {action} failed (HTTP {resp.status_code})")
        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderError(f"DNSPod {action} returned invalid JSON") from exc
        status = body.get("status", {})
        code = str(status.get("code", ""))
        if code == self._NO_RECORDS and action == "Record.List":
            return {"records": []}
        if code != "1":
            raise ProviderError(f"DNSPod {action} failed: [{code}] {status.get('message', '')}")
        return body

    def _find(self, zone: str, sub: str, value: str) -> list:
        body = self._call("Record.List", domain=zone, sub_domain=sub, record_type="TXT")
        return [r for r in body.get("records", []) if r.get("value") == value]

    def create_record(self, zone: str, name: str, value: str) -> None:
        sub = relative_name(zone, name)
        if self._find(zone, sub, value):
            logger.debug("TXT record %s already exists — skipping create", name)
            return
        self._call(
            "Record.Create",
            domain=zone,
            sub_domain=sub,
            record_type="TXT",
            record_line_id="0",
            value=value,
            ttl=str(self.ttl),
        )
        logger.info("Created DNSPod TXT record %s", name)

    def remove_record(self, zone: str, name: str, value: str) -> None:
        sub = relative_name(zone, name)
        matches = self._find(zone, sub, value)
        if not matches:
            logger.debug("TXT record %s not found, nothing to delete", name)
            return
        for record in matches:
            self._call("Record.Remove", domain=zone, record_id=str(record["id"]))
        logger.info("Deleted DNSPod TXT record %s", name)


class AliyunProvider(_HttpProvider):
    """DNS-01 provider backed by the Alibaba Cloud DNS (Alidns) RPC API."""

    type = ProviderType.ALIYUN
    required_credentials = ("access_key_id", "access_key_secret")
    resolvers = ("223.5.5.5", "223.6.6.6", "8.8.8.8")
    base_url = "https://alidns.aliyuncs.com/"
    api_version = "2015-01-09"
    ttl = 600

    @staticmethod
    def _percent_encode(value: str) -> str:
        return quote(value, safe="~")

    def sign(self, params: dict) -> str:
        """Signature v1.0: HMAC-SHA1 over GET&%2F&<canonicalized query>."""
        canonical = "&".join(
            f"{self._percent_encode(k)}={self._percent_encode(str(v))}" for k, v in sorted(params.items())
        )
        string_to_sign = f"GET&{self._percent_encode('/')}&{self._percent_encode(canonical)}"
        key = (self.credentials["access_key_secret"] + "&").encode()
        digest = hmac.new(key, string_to_sign.encode(), hashlib.sha1).digest()
        return base64.b64encode(digest).decode()

    def _call(self, action: str, **params) -> dict:
        query = {
            "Action": action,
            "Format": "JSON",
            "Version": self.api_version,
            "AccessKeyId": self.credentials["access_key_id"],
            "SignatureMethod": "HMAC-SHA1",
            "SignatureVersion": "1.0",
            "SignatureNonce": uuid.uuid4().hex,
            "Timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            **{k: str(v) for k, v in params.items()},
        }
        query["Signature"] = self.sign(query)
        resp = self._request("GET", self.base_url, params=query)
        try:
            body = resp.json()
        except ValueError as exc:
            raise ProviderError(f"Aliyun {action} returned invalid JSON (HTTP {resp.status_code})") from exc
        if resp.status_code >= 400 or "Code" in body:
            raise ProviderError(f"Aliyun {action} failed: [{body.get('Code')}] {body.get('Message', '')}")
        return body

    def _find(self, zone: str, rr: str, value: str) -> list:
        body = self._call(
            "DescribeDomainRecords",
            DomainName=zone,
            RRKeyWord=rr,
            TypeKeyWord="TXT",
            PageSize=500,
        )
        records = body.get("DomainRecords", {}).get("Record", [])
        return [r for r in records if r.get("RR") == rr and r.get("Value") == value]

    def create_record(self, zone: str, name: str, value: str) -> None:
        rr = relative_name(zone, name)
        if self._find(zone, rr, value):
            logger.debug("TXT record %s already exists — skipping create", name)
            return
        self._call("AddDomainRecord", DomainName=zone, RR=rr, Type="TXT", Value=value, TTL=self.ttl)
        logger.info("Created Aliyun TXT record %s", name)

    def remove_record(self, zone: str, name: str, value: str) -> None:
        rr = relative_name(zone, name)
        matches = self._find(zone, rr, value)
        if not matches:
            logger.debug("TXT record %s not found, nothing to delete", name)
            return
        for record in matches:
            self._call("DeleteDomainRecord", RecordId=record["RecordId"])
        logger.info("Deleted Aliyun TXT record %s", name)


# ─── Registry & factory ───────────────────────────────────────────────────────


PROVIDER_TYPES: Dict[ProviderType, Type[DNSChallengeProvider]] = {
    ProviderType.CLOUDFLARE: CloudflareProvider,
    ProviderType.ALIYUN: AliyunProvider,
    ProviderType.DNSPOD: DNSPodProvider,
    ProviderType.ROUTE53: Route53Provider,
    ProviderType.GODADDY: GoDaddyProvider,
}


def make_dns_provider(record: DNSProvider, encryption_key: str) -> DNSChallengeProvider:
    """
    Decrypt *record*'s credentials and instantiate the provider for its type.
    Raises ProviderError for unknown types or unusable credentials.
    """
    try:
        cls = PROVIDER_TYPES[ProviderType(record.type)]
    except (KeyError, ValueError):
        raise ProviderError(
            f"Unknown DNS provider type: {record.type!r}. "
            f"Must be one of: {', '.join(t.value for t in PROVIDER_TYPES)}"
        ) from None
    credentials = decrypt_credentials(record.credentials, encryption_key)
    return cls(credentials)
