"""
plc-log command line.

Commands:
    keygen           generate rotation + verification keys (run locally)
    create           create the identity, or reuse FAIR_DID when set
    update-service   upsert a service endpoint on the identity
    sign-artifact    sign a release file with the verification key

Keys and the identifier come from the environment (see plc_log.config).
Results are printed as name=value lines.
"""

import argparse
import logging
import os
import sys
from typing import Optional

from plc_log.config import Settings, load_settings
from plc_log.core.artifact import sign_artifact_file
from plc_log.core.errors import PlcError
from plc_log.core.keys import KeyPair, KeyRole, generate_key
from plc_log.directory.client import DirectoryClient
from plc_log.update.builder import UpdateBuilder, describe_failure

logger = logging.getLogger("plc_log.cli")

DEFAULT_SERVICE_ID = "fairpm_repo"
DEFAULT_SERVICE_TYPE = "FairPackageManagementRepo"


def emit(name: str, value) -> None:
    print(f"{name}={value}")


def _rotation_key(settings: Settings) -> KeyPair:
    if not settings.rotation_private:
        raise SystemExit("FAIR_ROTATION_KEY_PRIVATE is required")
    return KeyPair.from_private(settings.rotation_private, KeyRole.ROTATION)


def _verification_key(settings: Settings) -> KeyPair:
    if settings.verification_private:
        return KeyPair.from_private(settings.verification_private, KeyRole.VERIFICATION)
    if settings.verification_public:
        return KeyPair.from_public(settings.verification_public, KeyRole.VERIFICATION)
    raise SystemExit("FAIR_VERIFICATION_KEY_PRIVATE or FAIR_VERIFICATION_KEY_PUBLIC is required")


def _client(settings: Settings) -> DirectoryClient:
    return DirectoryClient(settings.directory_url, timeout=settings.timeout)


def cmd_keygen(args, settings: Settings) -> int:
    if os.getenv("GITHUB_ACTIONS") == "true":
        logger.error("keygen must run on a local machine, not in CI")
        return 1
    rotation = generate_key(KeyRole.ROTATION)
    verification = generate_key(KeyRole.VERIFICATION)
    emit("rotation_private", rotation.encode_private())
    emit("rotation_public", rotation.encode_public())
    emit("verification_private", verification.encode_private())
    emit("verification_public", verification.encode_public())
    return 0


def cmd_create(args, settings: Settings) -> int:
    if settings.did:
        logger.info(f"Using existing identifier {settings.did}")
        emit("did", settings.did)
        emit("created", "false")
        return 0

    rotation = _rotation_key(settings)
    verification = _verification_key(settings)
    with _client(settings) as client:
        builder = UpdateBuilder(client)
        if args.offline:
            result = builder.build_identity(rotation, verification, args.handle)
        else:
            result = builder.create_identity(rotation, verification, args.handle)

    emit("did", result.identifier)
    emit("cid", result.cid)
    emit("created", "true")
    emit("published", "true" if result.published else "false")
    return 0


def cmd_update_service(args, settings: Settings) -> int:
    identifier = args.did or settings.did
    if not identifier:
        raise SystemExit("an identifier is required (--did or FAIR_DID)")
    rotation = _rotation_key(settings)
    with _client(settings) as client:
        result = UpdateBuilder(client).update_service(
            identifier, rotation, args.service_id, args.service_type, args.endpoint
        )
    emit("cid", result.cid)
    emit("prev", result.prev)
    emit("verified", "true" if result.verification.verified else "false")
    return 0


def cmd_sign_artifact(args, settings: Settings) -> int:
    if not settings.verification_private:
        raise SystemExit("FAIR_VERIFICATION_KEY_PRIVATE is required")
    key = KeyPair.from_private(settings.verification_private, KeyRole.VERIFICATION)
    signed = sign_artifact_file(key, args.path)
    emit("signature", signed.signature)
    emit("checksum", signed.checksum)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="plc-log", description="PLC identity log tooling")
    parser.add_argument("--directory", help="directory base URL (overrides PLC_DIRECTORY_URL)")
    parser.add_argument("--timeout", type=float, help="request timeout in seconds")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("keygen", help="generate rotation and verification keys")
    p.set_defaults(func=cmd_keygen)

    p = sub.add_parser("create", help="create the identity")
    p.add_argument("--handle", required=True)
    p.add_argument("--offline", action="store_true", help="build and sign only")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("update-service", help="upsert a service endpoint")
    p.add_argument("--did")
    p.add_argument("--service-id", default=DEFAULT_SERVICE_ID)
    p.add_argument("--service-type", default=DEFAULT_SERVICE_TYPE)
    p.add_argument("--endpoint", required=True)
    p.set_defaults(func=cmd_update_service)

    p = sub.add_parser("sign-artifact", help="sign a release file")
    p.add_argument("path")
    p.set_defaults(func=cmd_sign_artifact)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings()
    if args.directory:
        settings.directory_url = args.directory
    if args.timeout is not None:
        settings.timeout = args.timeout
    logging.basicConfig(level=settings.log_level, stream=sys.stderr,
                        format="%(levelname)s %(name)s: %(message)s")
    try:
        return args.func(args, settings)
    except PlcError as e:
        logger.error(describe_failure(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
