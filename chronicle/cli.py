#!/usr/bin/env python3
"""
CHRONICLE Command-Line Interface

Operates a ledger persisted in a JSON state file. Each mutating command loads
the state, executes one ledger call and saves the state atomically.

Usage:
    chronicle [--state PATH] [--as ACCOUNT] <command> [subcommand] [options]

Commands:
    init        Create an empty state file (optionally seeding balances)
    account     Generate account addresses
    balance     Show an account's token balance
    stream      Create, show, list and transfer streams
    publish     Append a checkpoint
    pointer     Migrate a checkpoint's storage pointer
    tag         Assign a tag
    resolve     Resolve a tag
    log         Walk a stream's history from head (or a given checkpoint)
    verify      Check chain integrity
    consume     Consume entitlement as the calling account
    allowlist   Manage an allowlist stream's roster
    deliver     Deliver a key envelope
    envelope    Read a delivered key envelope
    config      Configuration management

Exit codes: 0 success, 1 usage or state error, 2 ledger rejection.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from enum import Enum
from typing import Any, Callable, List, Optional

import yaml

from chronicle import __version__
from chronicle.accounts import Account
from chronicle.capabilities import InMemoryTokenLedger, InsufficientBalance
from chronicle.config import ConfigError, get_config, get_config_manager
from chronicle.entitlement import EntitlementConfig, EntitlementMode
from chronicle.hardening import InvalidArgument, LedgerError
from chronicle.observability import (
    LedgerLayer,
    configure_logging,
    generate_correlation_id,
    get_logger,
    set_correlation_id,
)
from chronicle.registry import StreamRegistry
from chronicle.store import StateError, load_state, save_state

logger = get_logger("cli", LedgerLayer.CLI)

EXIT_ERROR = 1
EXIT_REJECTED = 2


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = EXIT_ERROR):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(json.loads(json.dumps(data, default=str)), default_flow_style=False, sort_keys=False)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    elif isinstance(data, list):
        return "\n".join(str(item) for item in data)
    return str(data)


def _hex_bytes(value: str, field_name: str) -> bytes:
    text = value[2:] if value.startswith("0x") else value
    try:
        return bytes.fromhex(text)
    except ValueError:
        raise InvalidArgument(field_name, "Must be hex-encoded bytes", value) from None


class ChronicleCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="chronicle",
            description="CHRONICLE checkpoint ledger and entitlement engine",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"chronicle {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error output",
        )
        self.parser.add_argument("--state", "-s", help="State file (default: store.state_path)")
        self.parser.add_argument("--config", "-c", help="YAML configuration file")
        self.parser.add_argument(
            "--as", dest="caller",
            default=os.environ.get("CHRONICLE_ACCOUNT"),
            help="Calling account (default: $CHRONICLE_ACCOUNT)",
        )
        self.parser.add_argument("--log-level", choices=["debug", "info", "warning", "error"])

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        """Register all command groups."""
        self._register_state_commands()
        self._register_stream_commands()
        self._register_chain_commands()
        self._register_entitlement_commands()
        self._register_envelope_commands()
        self._register_config_commands()

    def _register_state_commands(self) -> None:
        init = self.subparsers.add_parser("init", help="Create an empty state file")
        init.add_argument(
            "--balance", "-b", action="append", default=[], metavar="ACCOUNT=AMOUNT",
            help="Seed a token balance (repeatable)",
        )
        init.add_argument("--force", action="store_true", help="Overwrite an existing state file")

        account = self.subparsers.add_parser("account", help="Account utilities")
        account_sub = account.add_subparsers(dest="subcommand")
        new = account_sub.add_parser("new", help="Generate an Ed25519-backed account")
        new.add_argument("--seed", help="32-byte hex seed for a deterministic account")

        balance = self.subparsers.add_parser("balance", help="Show a token balance")
        balance.add_argument("account", help="Account address")

    def _register_stream_commands(self) -> None:
        stream = self.subparsers.add_parser("stream", help="Stream management")
        stream_sub = stream.add_subparsers(dest="subcommand")

        # stream create
        create = stream_sub.add_parser("create", help="Create a stream published by --as")
        create.add_argument("--name", "-n", default="", help="Display name")
        create.add_argument(
            "--mode", "-m", required=True,
            choices=[m.value for m in EntitlementMode],
            help="Entitlement strategy",
        )
        create.add_argument("--cost", default="0", help="Cost per consumption (counted modes)")
        create.add_argument("--minimum", default="0", help="Minimum balance (threshold mode)")
        create.add_argument("--open", action="store_true", help="Start the allowlist open")

        # stream show
        show = stream_sub.add_parser("show", help="Show a stream")
        show.add_argument("stream_id")

        # stream list
        lst = stream_sub.add_parser("list", help="List streams")
        lst.add_argument("--publisher", "-p", help="Only streams published by this account")

        # stream transfer
        transfer = stream_sub.add_parser("transfer", help="Transfer publisher authority")
        transfer.add_argument("stream_id")
        transfer.add_argument("new_publisher")

    def _register_chain_commands(self) -> None:
        publish = self.subparsers.add_parser("publish", help="Append a checkpoint")
        publish.add_argument("stream_id")
        publish.add_argument("--state-commitment", required=True, help="SHA-256 of canonical plaintext")
        publish.add_argument("--ciphertext-hash", required=True, help="SHA-256 of the encrypted bytes")
        publish.add_argument("--pointer", default="", help="Ciphertext storage pointer")
        publish.add_argument("--manifest-hash", required=True, help="SHA-256 of the provenance manifest")
        publish.add_argument("--tag", "-t", default="", help="Tag to assign")

        pointer = self.subparsers.add_parser("pointer", help="Migrate a storage pointer")
        pointer.add_argument("stream_id")
        pointer.add_argument("checkpoint_id")
        pointer.add_argument("new_pointer")

        tag = self.subparsers.add_parser("tag", help="Assign a tag")
        tag.add_argument("stream_id")
        tag.add_argument("checkpoint_id")
        tag.add_argument("tag")

        resolve = self.subparsers.add_parser("resolve", help="Resolve a tag")
        resolve.add_argument("stream_id")
        resolve.add_argument("tag")

        log = self.subparsers.add_parser("log", help="Walk history back to genesis")
        log.add_argument("stream_id")
        log.add_argument("--from", dest="from_id", help="Start from this checkpoint (default: head)")
        log.add_argument("--limit", type=int, default=0, help="Maximum entries (0 = all)")

        verify = self.subparsers.add_parser("verify", help="Check chain integrity")
        verify.add_argument("stream_id", nargs="?", help="Only this stream")

    def _register_entitlement_commands(self) -> None:
        consume = self.subparsers.add_parser("consume", help="Consume entitlement as --as")
        consume.add_argument("stream_id")
        consume.add_argument("checkpoint_id", nargs="?", default="")

        allowlist = self.subparsers.add_parser("allowlist", help="Allowlist roster management")
        allowlist_sub = allowlist.add_subparsers(dest="subcommand")

        add = allowlist_sub.add_parser("add", help="Add accounts to the roster")
        add.add_argument("stream_id")
        add.add_argument("accounts", nargs="+")

        remove = allowlist_sub.add_parser("remove", help="Remove an account from the roster")
        remove.add_argument("stream_id")
        remove.add_argument("account")

        open_cmd = allowlist_sub.add_parser("open", help="Open or close the allowlist")
        open_cmd.add_argument("stream_id")
        open_cmd.add_argument("switch", choices=["on", "off"])

    def _register_envelope_commands(self) -> None:
        deliver = self.subparsers.add_parser("deliver", help="Deliver a key envelope")
        deliver.add_argument("stream_id")
        deliver.add_argument("consumer")
        deliver.add_argument("checkpoint_id")
        deliver.add_argument("--wrapped-key", required=True, help="Wrapped key (hex)")
        deliver.add_argument("--nonce", default="", help="Nonce (hex)")
        deliver.add_argument("--sender-public-key", required=True, help="Ephemeral public key (hex)")

        envelope = self.subparsers.add_parser("envelope", help="Read a key envelope, or list a consumer's envelopes")
        envelope.add_argument("stream_id")
        envelope.add_argument("consumer")
        envelope.add_argument("checkpoint_id", nargs="?", help="Omit to list every envelope for the consumer")

    def _register_config_commands(self) -> None:
        """Register config subcommands."""
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get configuration value")
        get.add_argument("path", help="Config path (e.g., envelope.max_wrapped_key_bytes)")

        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")
        config_sub.add_parser("schema", help="Export configuration schema")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            mgr = get_config_manager()
            mgr.load_defaults()
            if parsed.config:
                mgr.load_from_file(parsed.config)
            obs = get_config().observability
            configure_logging(
                level=parsed.log_level or obs.log_level.get(),
                fmt=obs.log_format.get(),
            )

            set_correlation_id(generate_correlation_id())
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except LedgerError as e:
            if not parsed.quiet:
                print(json.dumps(e.to_dict()), file=sys.stderr)
            return EXIT_REJECTED

        except InsufficientBalance as e:
            if not parsed.quiet:
                print(json.dumps({"error": "InsufficientBalance", "message": str(e)}), file=sys.stderr)
            return EXIT_REJECTED

        except (CLIError, StateError, ConfigError) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return getattr(e, "exit_code", EXIT_ERROR)

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        logger.debug(f"Dispatching {cmd} {subcmd or ''}".rstrip(), operation=handler_name)
        return handler(args)

    def _caller(self, args: argparse.Namespace) -> str:
        if not args.caller:
            raise CLIError("This command needs a calling account: pass --as or set CHRONICLE_ACCOUNT")
        return args.caller

    def _read(self, args: argparse.Namespace, fn: Callable[[StreamRegistry], Any]) -> Any:
        return fn(load_state(args.state))

    def _write(self, args: argparse.Namespace, fn: Callable[[StreamRegistry], Any]) -> Any:
        registry = load_state(args.state)
        result = fn(registry)
        save_state(registry, args.state)
        return result

    # State handlers
    def _handle_init(self, args: argparse.Namespace) -> Any:
        path = args.state or get_config().store.state_path.get()
        if os.path.exists(path) and not args.force:
            raise CLIError(f"State file already exists: {path} (use --force to overwrite)")

        balances = {}
        for item in args.balance:
            account, sep, amount = item.partition("=")
            if not sep:
                raise CLIError(f"Expected ACCOUNT=AMOUNT, got {item!r}")
            balances[account] = amount

        tokens = InMemoryTokenLedger(balances)
        registry = StreamRegistry(burn=tokens, balance=tokens)
        written = save_state(registry, path)
        return {"state": str(written), "balances": tokens.export()}

    def _handle_account_new(self, args: argparse.Namespace) -> Any:
        if args.seed:
            account = Account.from_seed(_hex_bytes(args.seed, "seed"))
        else:
            account = Account.generate()
        return {"address": account.address, "public_key": account.public_key.hex()}

    def _handle_balance(self, args: argparse.Namespace) -> Any:
        def read(registry: StreamRegistry) -> Any:
            return {"account": args.account.lower(), "balance": str(registry.balance.balance_of(args.account))}
        return self._read(args, read)

    # Stream handlers
    def _handle_stream_create(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)
        mode = EntitlementMode(args.mode)
        entitlement = EntitlementConfig(mode, cost=args.cost, minimum=args.minimum, open=args.open)

        def create(registry: StreamRegistry) -> Any:
            stream_id = registry.create_stream(caller, args.name, entitlement)
            return registry.get_stream(stream_id).info()
        return self._write(args, create)

    def _handle_stream_show(self, args: argparse.Namespace) -> Any:
        return self._read(args, lambda r: r.get_stream(args.stream_id).info())

    def _handle_stream_list(self, args: argparse.Namespace) -> Any:
        def read(registry: StreamRegistry) -> Any:
            streams = registry.streams_of(args.publisher) if args.publisher else registry.streams()
            return {"streams": [s.info() for s in streams], "count": len(streams)}
        return self._read(args, read)

    def _handle_stream_transfer(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)

        def transfer(registry: StreamRegistry) -> Any:
            new_publisher = registry.transfer_publisher(args.stream_id, caller, args.new_publisher)
            return {"stream_id": args.stream_id, "publisher": new_publisher}
        return self._write(args, transfer)

    # Chain handlers
    def _handle_publish(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)

        def publish(registry: StreamRegistry) -> Any:
            checkpoint = registry.publish(
                args.stream_id, caller,
                state_commitment=args.state_commitment,
                ciphertext_hash=args.ciphertext_hash,
                ciphertext_pointer=args.pointer,
                manifest_hash=args.manifest_hash,
                tag=args.tag,
            )
            result = checkpoint.to_dict()
            result["tag"] = registry.tag_of(args.stream_id, checkpoint.checkpoint_id)
            return result
        return self._write(args, publish)

    def _handle_pointer(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)

        def update(registry: StreamRegistry) -> Any:
            return registry.update_ciphertext_pointer(
                args.stream_id, caller, args.checkpoint_id, args.new_pointer
            ).to_dict()
        return self._write(args, update)

    def _handle_tag(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)

        def assign(registry: StreamRegistry) -> Any:
            change = registry.assign_tag(args.stream_id, caller, args.checkpoint_id, args.tag)
            return {
                "tag": change.tag,
                "checkpoint_id": change.checkpoint_id,
                "previous_checkpoint_id": change.previous_checkpoint_id,
                "previous_tag": change.previous_tag,
            }
        return self._write(args, assign)

    def _handle_resolve(self, args: argparse.Namespace) -> Any:
        return self._read(args, lambda r: {
            "tag": args.tag,
            "checkpoint_id": r.resolve_tag(args.stream_id, args.tag),
        })

    def _handle_log(self, args: argparse.Namespace) -> Any:
        def read(registry: StreamRegistry) -> Any:
            stream = registry.get_stream(args.stream_id)
            entries = []
            for checkpoint in stream.chain.history(args.from_id):
                entry = checkpoint.to_dict()
                entry["tag"] = stream.tag_of(checkpoint.checkpoint_id)
                entries.append(entry)
                if args.limit and len(entries) >= args.limit:
                    break
            return {"stream_id": stream.stream_id, "head": stream.head, "entries": entries}
        return self._read(args, read)

    def _handle_verify(self, args: argparse.Namespace) -> Any:
        def read(registry: StreamRegistry) -> Any:
            if args.stream_id:
                errors = {args.stream_id: registry.get_stream(args.stream_id).verify()}
                errors = {k: v for k, v in errors.items() if v}
            else:
                errors = registry.verify()
            return {"valid": not errors, "errors": errors, "streams": len(registry)}

        result = self._read(args, read)
        if not result["valid"]:
            print(format_output(result, OutputFormat(args.format)))
            raise CLIError("Integrity check failed", exit_code=EXIT_REJECTED)
        return result

    # Entitlement handlers
    def _handle_consume(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)

        def consume(registry: StreamRegistry) -> Any:
            recorded = registry.consume(args.stream_id, caller, args.checkpoint_id)
            return {
                "account": caller.lower(),
                "stream_id": args.stream_id,
                "checkpoint_id": args.checkpoint_id,
                "recorded": recorded,
                "balance": str(registry.balance.balance_of(caller)),
            }
        return self._write(args, consume)

    def _handle_allowlist_add(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)
        return self._write(args, lambda r: {
            "added": r.allow_many(args.stream_id, caller, args.accounts),
        })

    def _handle_allowlist_remove(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)
        return self._write(args, lambda r: {
            "removed": r.disallow(args.stream_id, caller, args.account),
        })

    def _handle_allowlist_open(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)
        is_open = args.switch == "on"
        return self._write(args, lambda r: {
            "open": is_open,
            "changed": r.set_open(args.stream_id, caller, is_open),
        })

    # Envelope handlers
    def _handle_deliver(self, args: argparse.Namespace) -> Any:
        caller = self._caller(args)
        wrapped_key = _hex_bytes(args.wrapped_key, "wrapped_key")
        nonce = _hex_bytes(args.nonce, "nonce")
        sender_public_key = _hex_bytes(args.sender_public_key, "sender_public_key")

        return self._write(args, lambda r: r.deliver(
            args.stream_id, caller, args.consumer, args.checkpoint_id,
            wrapped_key, nonce, sender_public_key,
        ).to_dict())

    def _handle_envelope(self, args: argparse.Namespace) -> Any:
        def read(registry: StreamRegistry) -> Any:
            if not args.checkpoint_id:
                return [e.to_dict() for e in registry.envelopes_for(args.stream_id, args.consumer)]
            envelope = registry.get_envelope(args.stream_id, args.consumer, args.checkpoint_id)
            if envelope is None:
                return {"exists": False}
            result = envelope.to_dict()
            result["exists"] = True
            return result
        return self._read(args, read)

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        mgr = get_config_manager()
        return {"path": args.path, "value": mgr.get(args.path)}

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config_schema(self, args: argparse.Namespace) -> Any:
        return get_config_manager().export_schema()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = ChronicleCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
