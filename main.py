"""
letsync — certificate lifecycle server CLI.

Usage:
  python main.py serve                                   # Agent API + renewal scheduler
  python main.py sweep                                   # Run one daily renewal sweep now
  python main.py retry                                   # Run one retry sweep now
  python main.py provider add cf cloudflare --cred api_token=...
  python main.py cert add example.com --san '*.example.com' --provider cf
  python main.py cert issue 1
  python main.py agent add web-01
  python main.py agent bind 1 1 --path /etc/nginx/ssl/example.com --reload 'systemctl reload nginx'
"""
from __future__ import annotations

import argparse
import logging
import sys

import structlog

from lifecycle.errors import LifecycleError

log = logging.getLogger(__name__)


# ── Logging setup ─────────────────────────────────────────────────────────────


def configure_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
    )
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


# ── Wiring ────────────────────────────────────────────────────────────────────


def open_store():
    from config import settings
    from lifecycle.sqlite_store import SQLiteStore

    return SQLiteStore(settings.DATABASE_PATH)


def build_scheduler(store):
    from challenge.coordinator import make_coordinator
    from lifecycle.notifier import make_notifier
    from scheduler.renewal import make_scheduler

    return make_scheduler(store, make_coordinator(store), make_notifier())


# ── Server & sweeps ───────────────────────────────────────────────────────────


def run_server(args: argparse.Namespace) -> int:
    import uvicorn
    from config import settings
    from server.api import create_app
    from server.rate_limit import DownloadRateLimiter
    from server.registry import make_registry

    if not settings.AGENT_SECRET:
        log.error("AGENT_SECRET is not set. Add it to .env before starting the server.")
        return 1

    store = open_store()
    app = create_app(
        make_registry(store),
        DownloadRateLimiter(limit=settings.DOWNLOAD_RATE_LIMIT),
        scheduler=build_scheduler(store),
    )
    log.info("Serving agent API on %s:%d (public URL %s)", settings.SERVER_HOST, settings.SERVER_PORT, settings.public_url)
    uvicorn.run(app, host=settings.SERVER_HOST, port=settings.SERVER_PORT, log_level="info")
    return 0


def run_sweep(args: argparse.Namespace) -> int:
    scheduler = build_scheduler(open_store())
    summary = scheduler.retry_sweep() if args.command == "retry" else scheduler.daily_sweep()
    log.info(
        "Sweep complete — renewed: %s | failed: %s | skipped: %s",
        ", ".join(summary["renewed"]) or "none",
        ", ".join(summary["failed"]) or "none",
        ", ".join(summary["skipped"]) or "none",
    )
    return 1 if summary["failed"] else 0


# ── DNS providers ─────────────────────────────────────────────────────────────


def _parse_credentials(pairs: list[str]) -> dict:
    credentials = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise LifecycleError(f"Credential must be KEY=VALUE, got {pair!r}")
        credentials[key.strip()] = value
    return credentials


def provider_cmd(args: argparse.Namespace) -> int:
    from config import settings
    from challenge.dns_providers import PROVIDER_TYPES
    from lifecycle.credentials import encrypt_credentials
    from lifecycle.models import DNSProvider, ProviderType

    store = open_store()
    if args.action == "add":
        provider_type = ProviderType(args.type)
        credentials = _parse_credentials(args.cred)
        # Validates required credential keys before anything is stored
        PROVIDER_TYPES[provider_type](credentials)
        if not settings.ENCRYPTION_KEY:
            raise LifecycleError("ENCRYPTION_KEY must be set to store DNS provider credentials")
        provider = store.create_provider(DNSProvider(
            name=args.name,
            type=provider_type,
            credentials=encrypt_credentials(credentials, settings.ENCRYPTION_KEY),
        ))
        print(f"Added DNS provider {provider.id}: {provider.name} ({provider.type.value})")
    elif args.action == "list":
        for p in store.list_providers():
            print(f"{p.id:>4}  {p.name:<24} {p.type.value}")
    elif args.action == "delete":
        store.delete_provider(args.id)
        print(f"Deleted DNS provider {args.id}")
    return 0


# ── Certificates ──────────────────────────────────────────────────────────────


def cert_cmd(args: argparse.Namespace) -> int:
    from lifecycle.models import Certificate

    store = open_store()
    if args.action == "add":
        provider = store.get_provider_by_name(args.provider)
        cert = store.create_certificate(Certificate(
            domain=args.domain.lower(),
            san=[s.lower() for s in args.san or []],
            dns_provider_id=provider.id,
        ))
        print(f"Added certificate {cert.id}: {', '.join(cert.domains)}")
    elif args.action == "issue":
        from challenge.coordinator import make_coordinator

        material = make_coordinator(store).issue(args.id)
        print(f"Issued certificate {args.id}, expires {material.expires_at:%Y-%m-%d}, {material.fingerprint}")
    elif args.action == "list":
        for c in store.list_certificates():
            expires = f"{c.expires_at:%Y-%m-%d}" if c.expires_at else "never issued"
            retry = f"  retry #{c.fail_count} at {c.next_retry_at:%Y-%m-%d %H:%M}" if c.next_retry_at else ""
            print(f"{c.id:>4}  {c.domain:<32} {c.status.value:<8} {expires}{retry}")
    elif args.action == "delete":
        store.delete_certificate(args.id)
        print(f"Deleted certificate {args.id}")
    elif args.action == "logs":
        for task in store.list_task_statuses(cert_id=args.id):
            print(f"[{task.start_time:%Y-%m-%d %H:%M:%S}] {task.task_type.value} {task.status.value} ({task.task_id})")
            for line in store.list_task_logs(task.task_id):
                print(f"    {line.level:<5} {line.message}")
    return 0


# ── Agents ────────────────────────────────────────────────────────────────────


def agent_cmd(args: argparse.Namespace) -> int:
    from lifecycle.models import FileMapping
    from server.registry import make_registry

    registry = make_registry(open_store())
    if args.action == "add":
        agent = registry.create_agent(args.name, args.poll_interval)
        print(f"Added agent {agent.id}: {agent.name}")
        print(f"Connect URL: {registry.connect_url(agent)}")
    elif args.action == "list":
        for a in registry.list_agents():
            print(f"{a['id']:>4}  {a['name']:<24} {a['status']:<8} {a['ip'] or '-':<16} certs={a['certs']}")
    elif args.action == "bind":
        mapping = FileMapping(cert=args.cert_file, key=args.key_file, fullchain=args.fullchain_file)
        registry.bind(args.agent_id, args.cert_id, args.path, mapping, args.reload or "")
        print(f"Bound certificate {args.cert_id} to agent {args.agent_id} at {args.path}")
    elif args.action == "unbind":
        registry.unbind(args.agent_id, args.cert_id)
        print(f"Unbound certificate {args.cert_id} from agent {args.agent_id}")
    elif args.action == "regenerate":
        agent = registry.regenerate_credentials(args.agent_id)
        print(f"New connect URL: {registry.connect_url(agent)}")
    return 0


# ── CLI ───────────────────────────────────────────────────────────────────────


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="letsync",
        description="DNS-01 certificate lifecycle server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve", help="Run the agent API and the renewal scheduler").set_defaults(func=run_server)
    sub.add_parser("sweep", help="Run one daily renewal sweep now").set_defaults(func=run_sweep)
    sub.add_parser("retry", help="Run one retry sweep now").set_defaults(func=run_sweep)

    provider = sub.add_parser("provider", help="Manage DNS providers").add_subparsers(dest="action", required=True)
    p = provider.add_parser("add", help="Add a DNS provider")
    p.add_argument("name")
    p.add_argument("type", choices=["cloudflare", "aliyun", "dnspod", "route53", "godaddy"])
    p.add_argument("--cred", action="append", metavar="KEY=VALUE", help="Credential field (repeatable)")
    provider.add_parser("list", help="List DNS providers")
    p = provider.add_parser("delete", help="Delete a DNS provider")
    p.add_argument("id", type=int)
    for name in ("add", "list", "delete"):
        provider.choices[name].set_defaults(func=provider_cmd)

    cert = sub.add_parser("cert", help="Manage certificates").add_subparsers(dest="action", required=True)
    c = cert.add_parser("add", help="Add a certificate")
    c.add_argument("domain")
    c.add_argument("--san", nargs="+", metavar="DOMAIN", help="Additional names")
    c.add_argument("--provider", required=True, help="DNS provider name")
    c = cert.add_parser("issue", help="Issue a certificate now")
    c.add_argument("id", type=int)
    cert.add_parser("list", help="List certificates")
    c = cert.add_parser("delete", help="Delete a certificate")
    c.add_argument("id", type=int)
    c = cert.add_parser("logs", help="Show issuance task logs")
    c.add_argument("id", type=int)
    for name in ("add", "issue", "list", "delete", "logs"):
        cert.choices[name].set_defaults(func=cert_cmd)

    agent = sub.add_parser("agent", help="Manage deployment agents").add_subparsers(dest="action", required=True)
    a = agent.add_parser("add", help="Create an agent and print its connect URL")
    a.add_argument("name")
    a.add_argument("--poll-interval", type=int, default=None, metavar="SECONDS")
    agent.add_parser("list", help="List agents")
    a = agent.add_parser("bind", help="Deploy a certificate through an agent")
    a.add_argument("agent_id", type=int)
    a.add_argument("cert_id", type=int)
    a.add_argument("--path", required=True, help="Deploy directory on the agent host")
    a.add_argument("--cert-file", default="cert.pem")
    a.add_argument("--key-file", default="key.pem")
    a.add_argument("--fullchain-file", default="fullchain.pem")
    a.add_argument("--reload", help="Reload command run after deployment")
    a = agent.add_parser("unbind", help="Stop deploying a certificate through an agent")
    a.add_argument("agent_id", type=int)
    a.add_argument("cert_id", type=int)
    a = agent.add_parser("regenerate", help="Issue a new connect URL for an agent")
    a.add_argument("agent_id", type=int)
    for name in ("add", "list", "bind", "unbind", "regenerate"):
        agent.choices[name].set_defaults(func=agent_cmd)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    try:
        return args.func(args)
    except (LifecycleError, ValueError) as exc:
        log.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
