from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .client import CasClient
from .config import CasConfig, default_config_path, load_config
from .digest import DigestComputer, parse_digest
from .errors import CASError, NotFoundError


def _load(args) -> CasConfig:
    if args.config:
        cfg = load_config(args.config)
    elif default_config_path().exists():
        cfg = load_config(default_config_path())
    else:
        cfg = CasConfig({"cas": {}})
    return cfg.with_overrides(
        remote_cache=args.remote_cache,
        remote_http_cache=args.remote_http_cache,
        local_cache=args.local_cache,
        instance_name=args.remote_instance_name,
        timeout_s=args.remote_timeout,
        digest_function=args.digest_function,
        max_workers=args.jobs,
    )


def _client(args) -> CasClient:
    return CasClient.from_config(args.cfg)


def cmd_ls(args) -> int:
    with _client(args) as c:
        c.list_tree(args.digest, args.limit)
    return 0


def cmd_lsoutdir(args) -> int:
    with _client(args) as c:
        out_dir = c.get_output_directory(args.digest)
        c.list_output_directory(out_dir, args.limit)
    return 0


def cmd_getdir(args) -> int:
    with _client(args) as c:
        c.download_directory(Path(args.path), args.digest, atomic=args.atomic)
    print(f"Downloaded {args.digest} to {args.path}")
    return 0


def cmd_getoutdir(args) -> int:
    with _client(args) as c:
        out_dir = c.get_output_directory(args.digest)
        c.download_output_directory(out_dir, Path(args.path), atomic=args.atomic)
    print(f"Downloaded OutputDirectory {out_dir.path} to {args.path}")
    return 0


def cmd_cat(args) -> int:
    with _client(args) as c:
        try:
            if args.file:
                with open(args.file, "wb") as out:
                    c.download_blob_to(args.digest, out)
            else:
                c.download_blob_to(args.digest, sys.stdout.buffer)
                sys.stdout.buffer.flush()
        except NotFoundError:
            print(f"Object {args.digest} not found in the CAS.", file=sys.stderr)
            return 1
    return 0


def cmd_put(args) -> int:
    with _client(args) as c:
        d = c.upload_file(Path(args.file))
    print(str(d))
    return 0


def cmd_digest(args) -> int:
    print(str(DigestComputer(args.cfg.digest_function).compute_path(Path(args.file))))
    return 0


def _digest_arg(s: str):
    try:
        return parse_digest(s)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cas-client", description="Client for REAPI content-addressable storage")
    p.add_argument("--config", default=None, help=f"YAML config (default: {default_config_path()})")
    p.add_argument("--remote_cache", default=None, help="HOST or HOST:PORT of a gRPC remote cache.")
    p.add_argument("--remote_http_cache", default=None, help="Base URL of an HTTP cache.")
    p.add_argument("--local_cache", default=None, help="Directory of a local CAS.")
    p.add_argument("--remote_instance_name", default=None, help="instance_name for the remote API.")
    p.add_argument("--remote_timeout", default=None, type=float, help="Per-call deadline in seconds.")
    p.add_argument("--digest_function", default=None, help="sha256 (default), sha1, md5, sha384, sha512")
    p.add_argument("--jobs", "-j", default=None, type=int, help="Worker threads for sibling fetches.")
    p.add_argument("--verbose", "-v", action="store_true")
    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("ls", help="List a Directory tree with digests.")
    s.add_argument("--digest", "-d", required=True, type=_digest_arg, help="hex_hash/size_bytes of the Directory")
    s.add_argument("--limit", "-l", type=int, default=100)
    s.set_defaults(func=cmd_ls)

    s = sub.add_parser("lsoutdir", help="List an OutputDirectory with digests.")
    s.add_argument("--digest", "-d", required=True, type=_digest_arg, help="hex_hash/size_bytes of the OutputDirectory")
    s.add_argument("--limit", "-l", type=int, default=100)
    s.set_defaults(func=cmd_lsoutdir)

    s = sub.add_parser("getdir", help="Download a Directory.")
    s.add_argument("--digest", "-d", required=True, type=_digest_arg)
    s.add_argument("--path", "-o", required=True)
    s.add_argument("--atomic", action="store_true", help="Build in a temporary directory and rename on success.")
    s.set_defaults(func=cmd_getdir)

    s = sub.add_parser("getoutdir", help="Download an OutputDirectory.")
    s.add_argument("--digest", "-d", required=True, type=_digest_arg)
    s.add_argument("--path", "-o", required=True)
    s.add_argument("--atomic", action="store_true", help="Build in a temporary directory and rename on success.")
    s.set_defaults(func=cmd_getoutdir)

    s = sub.add_parser("cat", help="Write a blob to stdout or a file.")
    s.add_argument("--digest", "-d", required=True, type=_digest_arg)
    s.add_argument("--file", "-o", default=None)
    s.set_defaults(func=cmd_cat)

    s = sub.add_parser("put", help="Upload a file and print its digest.")
    s.add_argument("file")
    s.set_defaults(func=cmd_put)

    s = sub.add_parser("digest", help="Print a file's digest.")
    s.add_argument("file")
    s.set_defaults(func=cmd_digest)

    return p


def main(argv=None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    try:
        cfg = _load(args)
    except (OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    args.cfg = cfg
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, cfg.log_level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except (CASError, OSError, ValueError) as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
