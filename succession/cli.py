from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from succession.assembler import FailurePolicy, RegistryBuilder
from succession.constants import HASH_ARGON2ID, HASH_BLAKE2B
from succession.errors import SuccessionError, format_name_path
from succession.kdc import Parent
from succession.revisions import RevisionChain
from succession.source import SourceDirectory


def _configure_logging(verbose: bool, quiet: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def cmd_new(directory: str, *, force: bool = False, hash_algorithm: str = HASH_ARGON2ID) -> bool:
    """Create a new source directory with a template record tree."""
    source = SourceDirectory.generate(directory, overwrite=force, hash_algorithm=hash_algorithm)
    print(f"Created registry source in {source.path}")
    print(f"  Root record: {source.root_record_path}")
    for key in source.signing_keys:
        print(f"  Signing key: {key.key_id.hex()}")
    return True


def cmd_make(directory: str, *, jobs: Optional[int] = None, best_effort: bool = False, quiet: bool = False) -> bool:
    """Publish the record tree of a source directory into its store.

    Args:
        directory: Source directory holding registry.yaml.
        jobs: Parallel writers; defaults to the configured value.
        best_effort: Keep building siblings when a record fails.
        quiet: Print the summary only.
    """
    source = SourceDirectory.load(directory)
    policy = FailurePolicy.BEST_EFFORT if best_effort else source.config.failure_policy
    with source.locked():
        root = source.load_root_record()
        builder = RegistryBuilder(source.pipeline(), policy=policy, jobs=jobs or source.config.jobs)
        summary = builder.build(source.config.root_seed, root, recover=True)
    if not quiet:
        for path, outcome in sorted(summary.outcomes.items()):
            print(f"{outcome.kind.value:<9} {format_name_path(path):<32} rev {outcome.revision_number:<4} {outcome.address}")
    for path, exc in summary.failures:
        print(f"failed    {format_name_path(path):<32} {exc}", file=sys.stderr)
    print(
        f"Records: {summary.created} created, {summary.updated} updated, "
        f"{summary.unchanged} unchanged, {len(summary.failures)} failed"
    )
    return summary.ok


def cmd_show(directory: str, names: List[str], *, history: bool = False, raw: bool = False) -> bool:
    """Resolve a record by its name path below the root record and print it."""
    source = SourceDirectory.load(directory)
    store = source.open_store()
    chain = RevisionChain(store, source.key_derivation_chain(), [k.verifying_key for k in source.signing_keys])
    parent: Parent = source.config.root_seed
    path = [b""] + [n.encode("utf-8") for n in names]
    revision = None
    record_parent = parent
    for depth, name in enumerate(path):
        record_parent = parent
        revision = chain.resolve_current(parent, name)
        if revision is None:
            print(f"Error: no record at {format_name_path(path[: depth + 1])}", file=sys.stderr)
            return False
        parent = revision.address
    revisions = chain.history(record_parent, path[-1]) if history else [revision]
    metadata, payload = chain.load(revision)
    if raw:
        sys.stdout.buffer.write(payload)
        sys.stdout.flush()
        return True
    print(f"Record: {format_name_path(path)}")
    for rev in revisions:
        print(f"  Revision {rev.revision_number}: {rev.address} ({rev.payload_length} bytes, {len(rev.fragments)} fragments)")
    for key, value in sorted(metadata.items()):
        print(f"  {key}: {value.decode('utf-8', errors='replace')}")
    print(f"  Payload: {len(payload)} bytes")
    return True


def cmd_recover(directory: str) -> bool:
    """Finish or roll back commits left behind by an interrupted build."""
    source = SourceDirectory.load(directory)
    with source.locked():
        report = source.open_store().recover()
    print(
        f"Recovery: {report.resumed} resumed, {report.rolled_back} rolled back, "
        f"{report.discarded} discarded, {report.fragments_removed} fragments removed"
    )
    return True


def cmd_gc(directory: str) -> bool:
    """Remove fragments that no published revision references."""
    source = SourceDirectory.load(directory)
    with source.locked():
        removed = source.open_store().collect_garbage()
    print(f"Removed {removed} unreferenced fragments")
    return True


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="succession",
        description="Publish a tree of records into a content-addressed registry",
    )
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    ap.add_argument("--quiet", action="store_true", help="Limit output to warnings and summaries")
    sub = ap.add_subparsers(dest="cmd", required=True)

    ap_new = sub.add_parser("new", help="Create a new registry source directory")
    ap_new.add_argument("directory", help="Directory to create")
    ap_new.add_argument("--force", action="store_true", help="Write into a non-empty directory")
    ap_new.add_argument(
        "--hash",
        choices=[HASH_ARGON2ID, HASH_BLAKE2B],
        default=HASH_ARGON2ID,
        help="Record key hash (default argon2id; blake2b is fast but not memory-hard)",
    )

    ap_make = sub.add_parser("make", help="Publish the record tree into the store")
    ap_make.add_argument("-i", "--input", default=".", help="Source directory (default: current directory)")
    ap_make.add_argument("--jobs", "-j", type=int, help="Parallel writers (default: from registry.yaml)")
    ap_make.add_argument("--best-effort", action="store_true", help="Skip failing subtrees instead of aborting")

    ap_show = sub.add_parser("show", help="Show the current revision of a record")
    ap_show.add_argument("-i", "--input", default=".", help="Source directory (default: current directory)")
    ap_show.add_argument("names", nargs="*", help="Name path below the root record")
    ap_show.add_argument("--history", action="store_true", help="List every revision")
    ap_show.add_argument("--raw", action="store_true", help="Write the payload to stdout")

    ap_recover = sub.add_parser("recover", help="Clean up after an interrupted build")
    ap_recover.add_argument("-i", "--input", default=".", help="Source directory (default: current directory)")

    ap_gc = sub.add_parser("gc", help="Remove unreferenced fragments")
    ap_gc.add_argument("-i", "--input", default=".", help="Source directory (default: current directory)")

    args = ap.parse_args(argv)
    _configure_logging(args.verbose, args.quiet)
    try:
        if args.cmd == "new":
            ok = cmd_new(args.directory, force=args.force, hash_algorithm=args.hash)
        elif args.cmd == "make":
            if args.jobs is not None and args.jobs < 1:
                raise ValueError("--jobs must be at least 1")
            ok = cmd_make(args.input, jobs=args.jobs, best_effort=args.best_effort, quiet=args.quiet)
        elif args.cmd == "show":
            ok = cmd_show(args.input, args.names, history=args.history, raw=args.raw)
        elif args.cmd == "recover":
            ok = cmd_recover(args.input)
        elif args.cmd == "gc":
            ok = cmd_gc(args.input)
        else:
            raise RuntimeError("Unknown command")
        sys.exit(0 if ok else 1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (SuccessionError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
