"""
zcapauth Command Line Interface.

Provides commands for generating identities, computing root capability ids,
delegating capabilities and running the HTTP service.
"""

import argparse
import asyncio
import json
import logging
import sys

from zcapauth import config
from zcapauth.capability import create_root_capability, get_root_capability_id, now_ms
from zcapauth.chain import delegate_capability
from zcapauth.keys import generate_identity, key_pair_from_jwk
from zcapauth.suites import Ed25519Suite


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format='%(levelname)s: %(message)s'
    )


def cmd_init(args: argparse.Namespace) -> int:
    """Generate a new Ed25519 did:key identity."""
    try:
        identity = generate_identity()
    except Exception as e:
        print(f"Error generating keys: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps({
            "profiles": {
                identity.did: {
                    "private_key_jwk": identity.private_key_jwk,
                    "id": identity.verification_method,
                }
            }
        }, indent=2))
    elif args.env:
        print(f"export ZCAP_DID='{identity.did}'")
        print(f"export ZCAP_PRIVATE_KEY='{identity.private_key_jwk}'")
    else:
        print("NEW IDENTITY GENERATED\n")
        print(f"DID: {identity.did}")
        print(f"Verification method: {identity.verification_method}")
        print("\n--- PRIVATE KEY (Keep Secret) ---")
        print(identity.private_key_jwk)
    return 0


def cmd_root_id(args: argparse.Namespace) -> int:
    """Print the root capability id of a target or a profile."""
    if args.profile:
        target = config.get_profile_path(args.profile, args.base_uri, args.base_path)
    elif args.target:
        target = args.target
    else:
        print("Error: give an invocation target or --profile", file=sys.stderr)
        return 1
    print(get_root_capability_id(target))
    return 0


def cmd_delegate(args: argparse.Namespace) -> int:
    """Delegate a profile's root capability to a controller."""
    try:
        identity = key_pair_from_jwk(args.key)
    except Exception as e:
        print(f"Error: invalid private key: {e}", file=sys.stderr)
        return 1

    target = args.target or config.get_profile_path(identity.did, args.base_uri, args.base_path)
    root = create_root_capability(controller=identity.did, invocation_target=target)
    actions = args.action or None

    capability = asyncio.run(delegate_capability(
        root,
        controller=args.controller,
        signer=identity.signer(),
        suite=Ed25519Suite(),
        expires=now_ms() + args.ttl * 1000,
        allowed_action=actions,
    ))
    print(json.dumps(capability, indent=2))
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    """Run the HTTP service with uvicorn."""
    import uvicorn

    uvicorn.run(
        "zcapauth.server:create_app_from_env",
        factory=True,
        host=args.host,
        port=args.port,
        log_level="debug" if args.verbose else "info",
    )
    return 0


def cmd_config(args: argparse.Namespace) -> int:
    config.print_config()
    return 0


def main(argv=None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog='zcapauth',
        description='zcapauth CLI - capability authorization and zcap refresh'
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose output')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # init command
    p_init = subparsers.add_parser('init', help='Generate a new did:key identity')
    p_init.add_argument('--env', action='store_true', help='Output as environment variables')
    p_init.add_argument('--json', action='store_true', help='Output as a ZCAP_PROFILE_SIGNERS file')

    # root-id command
    p_root = subparsers.add_parser('root-id', help='Print a root capability id')
    p_root.add_argument('target', nargs='?', help='Invocation target URL')
    p_root.add_argument('--profile', help='Profile id (uses the service profile path)')
    p_root.add_argument('--base-uri', default=config.BASE_URI, help='Service base URI')
    p_root.add_argument('--base-path', default=config.BASE_PATH, help='Profile route prefix')

    # delegate command
    p_delegate = subparsers.add_parser('delegate', help="Delegate a profile's root capability")
    p_delegate.add_argument('--key', required=True, help='Profile private key (JWK JSON)')
    p_delegate.add_argument('--controller', required=True, help='Delegate DID')
    p_delegate.add_argument('--target', help='Invocation target (default: profile path)')
    p_delegate.add_argument('--action', action='append', help='Allowed action (repeatable)')
    p_delegate.add_argument('--ttl', type=int, default=3600, help='Lifetime in seconds')
    p_delegate.add_argument('--base-uri', default=config.BASE_URI, help='Service base URI')
    p_delegate.add_argument('--base-path', default=config.BASE_PATH, help='Profile route prefix')

    # serve command
    p_serve = subparsers.add_parser('serve', help='Run the HTTP service')
    p_serve.add_argument('--host', default='127.0.0.1', help='Bind address')
    p_serve.add_argument('--port', type=int, default=18443, help='Bind port')

    subparsers.add_parser('config', help='Print configuration')

    args = parser.parse_args(argv)

    setup_logging(args.verbose if hasattr(args, 'verbose') else False)

    if args.command == 'init':
        return cmd_init(args)
    elif args.command == 'root-id':
        return cmd_root_id(args)
    elif args.command == 'delegate':
        return cmd_delegate(args)
    elif args.command == 'serve':
        return cmd_serve(args)
    elif args.command == 'config':
        return cmd_config(args)
    else:
        parser.print_help()
        return 0


if __name__ == '__main__':
    sys.exit(main())
