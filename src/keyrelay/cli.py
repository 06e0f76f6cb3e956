from __future__ import annotations

import argparse
import asyncio
import sys

from keyrelay.util.deps import check_dependencies


def self_check(logger) -> bool:
    from keyrelay.crypto.cipher import decrypt, encrypt
    from keyrelay.crypto.fingerprint import fingerprint, validate_secret
    from keyrelay.errors import DecryptionError, InvalidSecretError
    from keyrelay.protocol.constants import FINGERPRINT_LEN

    checks = []

    checks.append(("Python >= 3.10", sys.version_info >= (3, 10)))

    try:
        checks.append(("Cipher round trip", decrypt(encrypt("ping", "alpha1"), "alpha1") == "ping"))
    except Exception:
        checks.append(("Cipher round trip", False))

    try:
        decrypt(encrypt("ping", "alpha1"), "beta2")
        checks.append(("Wrong key rejected", False))
    except DecryptionError:
        checks.append(("Wrong key rejected", True))

    fp = fingerprint("alpha1")
    checks.append(("Fingerprint stable", fp == fingerprint("alpha1") and len(fp) == FINGERPRINT_LEN))

    try:
        validate_secret("not allowed!")
        checks.append(("Secret validation", False))
    except InvalidSecretError:
        checks.append(("Secret validation", True))

    all_ok = all(ok for _, ok in checks)
    for name, ok in checks:
        (logger.info if ok else logger.error)("self_check", check=name, status=("OK" if ok else "FAILED"))

    if not all_ok:
        raise RuntimeError("Self-check failed")
    logger.info("self_check_passed")
    return True


async def run_client(settings, secret: str) -> None:
    from keyrelay.client.wsclient import RelayClient
    from keyrelay.errors import ClientError

    def on_state(phase):
        print(f"[state] {phase.value}")

    def on_message(text):
        print(f"<- {text}")

    def on_copy(text, content_type):
        print(f"<- [{content_type}] {text}")

    def on_error(kind, detail):
        print(f"[{kind}] {detail}")

    client = RelayClient(
        settings.client,
        on_state_change=on_state,
        on_message=on_message,
        on_copy=on_copy,
        on_error=on_error,
    )

    try:
        try:
            group_id = await client.set_key(secret)
            print(f"Key set, group {group_id}")
        except ClientError as e:
            print(f"[input] {e}")

        while True:
            line = await asyncio.to_thread(sys.stdin.readline)
            if not line:
                break
            line = line.rstrip("\n")
            try:
                if line == "/quit":
                    break
                elif line == "/clear":
                    await client.clear_key()
                elif line.startswith("/key "):
                    group_id = await client.set_key(line[len("/key "):])
                    print(f"Key set, group {group_id}")
                elif line.startswith("/copy "):
                    await client.copy(line[len("/copy "):])
                else:
                    await client.send(line)
            except ClientError as e:
                print(f"[error] {e}")
    finally:
        await client.clear_key()


def main():
    ok, missing = check_dependencies()
    if not ok:
        print("ERROR: Missing dependencies:")
        for dep in missing:
            print(f"  - {dep}")
        print("\nInstall with:")
        print("pip install " + " ".join(f"'{dep}'" for dep in missing))
        sys.exit(1)

    import structlog
    from keyrelay.config import load_settings
    from keyrelay.errors import ConfigError
    from keyrelay.util.logs import configure_logging

    parser = argparse.ArgumentParser(description="keyrelay: shared-secret encrypted text relay")
    parser.add_argument("--config", help="JSON settings file")
    parser.add_argument("--log-level", choices=["debug", "info", "warning", "error", "critical"])
    subparsers = parser.add_subparsers(dest="command", required=True)

    relay_parser = subparsers.add_parser("relay", help="Run the relay server")
    relay_parser.add_argument("--host")
    relay_parser.add_argument("--port", type=int)

    client_parser = subparsers.add_parser("client", help="Run an interactive terminal client")
    client_parser.add_argument("--url")
    client_parser.add_argument("--key", required=True, help="Shared secret (letters and digits)")

    fp_parser = subparsers.add_parser("fingerprint", help="Print the group id for a secret")
    fp_parser.add_argument("secret")

    subparsers.add_parser("check", help="Run self-check")

    args = parser.parse_args()

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        print(f"Config error: {e}")
        sys.exit(2)
    if args.log_level:
        settings.log_level = args.log_level

    configure_logging(settings.log_level)
    logger = structlog.get_logger()

    if args.command == "check":
        self_check(logger)
        print("✓ Self-check passed")
        return

    if args.command == "fingerprint":
        from keyrelay.crypto.fingerprint import fingerprint, validate_secret
        from keyrelay.errors import InvalidSecretError
        try:
            print(fingerprint(validate_secret(args.secret)))
        except InvalidSecretError as e:
            print(f"Invalid secret: {e}")
            sys.exit(2)
        return

    if args.command == "relay":
        self_check(logger)
        import uvicorn
        from keyrelay.relay.app import build_relay_app
        relay = settings.relay
        if args.host:
            relay.host = args.host
        if args.port:
            relay.port = args.port
        app = build_relay_app(relay)
        logger.info("starting_relay", host=relay.host, port=relay.port, path=relay.ws_path)
        uvicorn.run(app, host=relay.host, port=relay.port, log_config=None,
                    ws_ping_interval=relay.ping_interval)
        return

    if args.command == "client":
        if args.url:
            settings.client.url = args.url

        print(f"Connecting to {settings.client.url}")
        print("Type a line to send it; /key SECRET, /copy TEXT, /clear, /quit")

        try:
            asyncio.run(run_client(settings, args.key))
        except KeyboardInterrupt:
            logger.info("client_shutdown", reason="keyboard_interrupt")
            print("\nShutting down...")

if __name__ == "__main__":
    main()
