"""Certificate state machine for site TLS.

The flow for a Let's Encrypt certificate is::

    unregistered -> registered -> domains_authorized -> issued -> installed
                                                              \\-> cleanup_pending

``installed`` follows a non-wildcard issuance whose challenge artefacts were
cleaned up. Wildcard issuance keeps its authorisation record around for the
next manual DNS verification and ends in ``cleanup_pending``. Renewal re-enters
at ``issued`` through :meth:`CertificateManager.issue`.

Subdomains can instead inherit the wildcard certificate of their parent
site, which involves no certificate authority interaction at all.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum

from .context import OperationContext
from .errors import OperationalFailure, PreconditionViolation, ProviderError
from .providers.acme import CertbotClient
from .state.models import Site
from .state.registry import SiteRegistry

logger = logging.getLogger(__name__)

WWW_PREFIX = "www."


class CertificateState(str, Enum):
    """Observable stages of a site certificate."""

    UNREGISTERED = "unregistered"
    REGISTERED = "registered"
    DOMAINS_AUTHORIZED = "domains_authorized"
    ISSUED = "issued"
    INSTALLED = "installed"
    CLEANUP_PENDING = "cleanup_pending"
    INHERITED = "inherited"


class SslType(str, Enum):
    """Ways a site can obtain its certificate."""

    LETSENCRYPT = "le"
    INHERIT = "inherit"


class ParentSiteMissingError(PreconditionViolation):
    """The parent of an inheriting site is not registered."""


class ParentWithoutSslError(PreconditionViolation):
    """The parent site has no certificate to share."""


class ParentNotWildcardError(PreconditionViolation):
    """The parent certificate does not cover subdomains."""


def www_domain(url: str) -> str:
    """Return *url* with its leading ``www.`` toggled."""
    if url.startswith(WWW_PREFIX):
        return url.removeprefix(WWW_PREFIX)
    return f"{WWW_PREFIX}{url}"


def cert_domains(url: str, wildcard: bool) -> list[str]:
    """Return the domains a certificate for *url* must cover, primary first."""
    if wildcard:
        return [url, f"*.{url}"]
    return [url, www_domain(url)]


def parent_url(url: str) -> str:
    """Return *url* without its first label."""
    return ".".join(url.split(".")[1:])


class CertificateManager:
    """Drive certificate issuance, renewal and inheritance for sites."""

    def __init__(
        self,
        registry: SiteRegistry,
        client_factory: Callable[[str], CertbotClient],
        reload_proxy: Callable[[], bool],
        *,
        email: str | None = None,
    ) -> None:
        """Wire the manager to the registry, a per-site client factory and the proxy."""
        self.registry = registry
        self.client_factory = client_factory
        self.reload_proxy = reload_proxy
        self.email = email

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def init_ssl(
        self,
        ctx: OperationContext,
        ssl_type: str,
        wildcard: bool = False,
    ) -> CertificateState:
        """Set up TLS for ``ctx.site`` using *ssl_type* (``le`` or ``inherit``)."""
        try:
            kind = SslType(ssl_type)
        except ValueError:
            raise PreconditionViolation(f"Unrecognized value for --type: {ssl_type}") from None
        if kind is SslType.INHERIT:
            if wildcard:
                raise PreconditionViolation("Cannot use --wildcard with --type=inherit")
            self.inherit(ctx.site.url)
            self._persist(ctx, ssl=True, ssl_wildcard=False)
            ctx.info(f"Inherited certs from parent {parent_url(ctx.site.url)}.")
            return CertificateState.INHERITED
        return self.init_le(ctx, wildcard)

    def init_le(self, ctx: OperationContext, wildcard: bool = False) -> CertificateState:
        """Register, authorise and (for non-wildcard sites) issue a certificate."""
        email = self._require_email()
        site = ctx.site.with_updates(ssl_wildcard=wildcard)
        ctx.site = site
        client = self.client_factory(site.url)

        if not self._call(ctx, "acme-register", client.register, email):
            self._persist(ctx, ssl=False, ssl_wildcard=False)
            ctx.warn("acme-register", f"Let's Encrypt registration failed for {email}.")
            return CertificateState.UNREGISTERED
        ctx.step("acme-register", detail=email)

        domains = cert_domains(site.url, wildcard)
        if not self._call(ctx, "acme-authorize", client.authorize, domains, wildcard):
            ctx.warn("acme-authorize", f"Domain authorization failed for {', '.join(domains)}.")
            return CertificateState.REGISTERED
        ctx.step("acme-authorize", detail=", ".join(domains))

        if wildcard:
            self._persist(ctx, ssl=True, ssl_wildcard=True)
            ctx.info(
                f"IMPORTANT: Run `sitectl site ssl {site.url}` once the DNS changes have "
                "propagated to complete the certificate generation and installation."
            )
            return CertificateState.DOMAINS_AUTHORIZED
        state = self.issue(ctx.nested("ssl"))
        self._persist(ctx, ssl=True, ssl_wildcard=False)
        return state

    def issue(self, ctx: OperationContext, *, force: bool = False) -> CertificateState:
        """Verify authorisation, (re)issue when needed and reload the proxy.

        Verification errors propagate unchanged when ``ctx.internal`` is set and
        become ``Failed to verify SSL: ...`` otherwise.
        """
        site = ctx.site
        email = self._require_email()
        client = self.client_factory(site.url)
        domains = cert_domains(site.url, site.ssl_wildcard)
        ctx.info("Starting SSL verification.")

        try:
            client.check(domains, site.ssl_wildcard)
        except (OperationalFailure, ProviderError) as exc:
            if ctx.internal:
                raise
            logger.debug("ssl check for %s failed", site.url, exc_info=True)
            ctx.step("acme-check", status="error", detail=str(exc))
            raise OperationalFailure(f"Failed to verify SSL: {exc}") from exc
        ctx.step("acme-check", detail=", ".join(domains))

        san = [domain for domain in domains if domain != site.url]
        try:
            issued = client.request(site.url, san, email, force)
        except ProviderError as exc:
            raise OperationalFailure(str(exc)) from exc
        ctx.step("acme-request", detail="issued" if issued else "certificate current")

        state = CertificateState.CLEANUP_PENDING
        if not site.ssl_wildcard:
            state = CertificateState.INSTALLED
            if issued:
                client.cleanup()
                ctx.step("acme-cleanup")

        if self.reload_proxy():
            ctx.step("proxy-reload")
        else:
            ctx.warn("proxy-reload", "Reverse proxy reload failed; new certificates not yet served.")
        ctx.info("SSL verification completed.")
        return state

    def inherit(self, url: str) -> Site:
        """Validate that *url* can share its parent's wildcard certificate."""
        parent_name = parent_url(url)
        parent = self.registry.find(parent_name) if parent_name else None
        if parent is None:
            raise ParentSiteMissingError(f"Unable to find existing site: {parent_name or url}")
        if not parent.ssl:
            raise ParentWithoutSslError(
                f"Cannot inherit from {parent_name} as site does not have SSL cert"
            )
        if not parent.ssl_wildcard:
            raise ParentNotWildcardError(
                f"Cannot inherit from {parent_name} as site does not have wildcard SSL cert"
            )
        return parent

    # ------------------------------------------------------------------
    def _require_email(self) -> str:
        if not self.email:
            raise PreconditionViolation(
                "Let's Encrypt email is not configured (set acme.email)."
            )
        return self.email

    def _persist(self, ctx: OperationContext, **changes: bool) -> None:
        ctx.site = ctx.site.with_updates(**changes)
        if self.registry.find(ctx.site.url) is not None:
            self.registry.save(ctx.site)

    @staticmethod
    def _call(ctx: OperationContext, name: str, func: Callable[..., bool], *args: object) -> bool:
        try:
            return bool(func(*args))
        except ProviderError as exc:
            ctx.step(name, status="error", detail=str(exc))
            return False


__all__ = [
    "CertificateManager",
    "CertificateState",
    "ParentNotWildcardError",
    "ParentSiteMissingError",
    "ParentWithoutSslError",
    "SslType",
    "cert_domains",
    "parent_url",
    "www_domain",
]
