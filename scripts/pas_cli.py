"""Command-line wrapper around the vault client.

Sessions live only as long as one invocation: every command that needs a
session logs on, runs, and logs off again.
"""
from __future__ import annotations
import argparse
import dataclasses
import getpass
import json
import logging
import sys
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pasclient.config import build_base_uri, load_cli_credentials, load_config
from pasclient.core.vault import (
    AuthMode,
    LoginOptions,
    Pagination,
    PASClient,
    PASError,
    PasswordCredential,
    RadiusCredential,
    RequestDescriptor,
    SessionStore,
    get_server,
)


def _prompt_passcode(prompt):
    return getpass.getpass(f"{prompt or 'One-time passcode'}: ")


def _parse_params(items):
    params = {}
    for item in items or []:
        name, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"Invalid --param {item!r} (expected name=value)")
        params[name] = value
    return params


def _build_credential(args, parser):
    secrets = load_cli_credentials()
    username = args.username or secrets.username
    password = secrets.password
    if not username:
        parser.error("Missing username (--username or PAS_USERNAME)")
    if not password:
        if not sys.stdin.isatty():
            parser.error("Missing password (PAS_PASSWORD or /run/secrets/pas_password)")
        password = getpass.getpass(f"Password for {username}: ")
    mode = AuthMode.parse(args.mode)
    if mode is AuthMode.RADIUS:
        return RadiusCredential(
            username,
            password,
            otp=args.otp,
            otp_provider=_prompt_passcode,
            otp_mode=args.otp_mode,
        )
    return PasswordCredential(username, password)


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main() -> None:
    """Command-line entry point."""
    parser = argparse.ArgumentParser(description="Vault REST API helper")
    parser.add_argument("--base-uri", help="Web service address (default: PAS_BASE_URI)")
    parser.add_argument("--app-name", default="PasswordVault")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS verification (test systems only)")
    parser.add_argument("--timeout", type=float)
    parser.add_argument("-v", "--verbose", action="store_true")

    logon_args = argparse.ArgumentParser(add_help=False)
    logon_args.add_argument("--username")
    logon_args.add_argument("--mode", default="CyberArk",
                            choices=[AuthMode.CYBERARK.value, AuthMode.LDAP.value, AuthMode.RADIUS.value])
    logon_args.add_argument("--otp")
    logon_args.add_argument("--otp-mode", default="challenge", choices=["challenge", "append"])
    logon_args.add_argument("--concurrent", action="store_true")
    logon_args.add_argument("--skip-version-check", action="store_true")

    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("server", help="Show server details (no logon)")
    sub.add_parser("logon", parents=[logon_args], help="Verify credentials and show the session")

    sr = sub.add_parser("request", parents=[logon_args], help="Log on and run one API call")
    sr.add_argument("--method", default="GET")
    sr.add_argument("--path", required=True)
    sr.add_argument("--body", help="JSON body")
    sr.add_argument("--param", action="append", help="Query parameter name=value")
    sr.add_argument("--min-version")
    sr.add_argument("--paginate", default="none", choices=[p.value for p in Pagination])
    sr.add_argument("--page-size", type=int, default=100)

    args = parser.parse_args()

    if not args.cmd:
        parser.print_help()
        return

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        config = load_config()
        overrides = {}
        if args.base_uri:
            overrides["base_uri"] = build_base_uri(args.base_uri, args.app_name)
        if args.insecure:
            overrides["verify_tls"] = False
        if args.timeout:
            overrides["timeout"] = args.timeout
        if overrides:
            config = dataclasses.replace(config, **overrides)
        if not config.base_uri:
            parser.error("Missing base URI (--base-uri or PAS_BASE_URI)")

        client = PASClient(config, store=SessionStore())

        if args.cmd == "server":
            _print_json(get_server(client.dispatcher))
            return

        descriptor = None
        if args.cmd == "request":
            try:
                body = json.loads(args.body) if args.body else None
                params = _parse_params(args.param)
                descriptor = RequestDescriptor(
                    args.method,
                    args.path,
                    body=body,
                    params=params or None,
                    min_version=args.min_version,
                    pagination=args.paginate,
                    page_size=args.page_size,
                )
            except ValueError as e:
                parser.error(str(e))

        credential = _build_credential(args, parser)
        options = LoginOptions(
            concurrent_session=args.concurrent or config.concurrent_session,
            skip_version_check=args.skip_version_check,
        )
        with client:
            session = client.authenticate(credential, args.mode, options)
            if descriptor is None:
                _print_json(session.describe())
            else:
                _print_json(client.execute(descriptor).body)
    except PASError as e:
        print(f"[{args.cmd}] Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
