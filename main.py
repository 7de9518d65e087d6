#!/usr/bin/env python3
"""Mod Asset Manager - Entry Point"""

import argparse
import faulthandler
import logging
import os
import sys
import traceback
from logging.handlers import RotatingFileHandler
from pathlib import Path

from errors import ModManagerError


def setup_logging(log_dir: Path | None = None) -> tuple[logging.Logger, Path]:
    log_dir = log_dir or Path(os.environ.get("APPDATA", "~")).expanduser() / "ModAssetManager"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "modassetmanager.log"

    handler = RotatingFileHandler(
        log_file,
        maxBytes=1 * 1024 * 1024,  # 1 MB
        backupCount=2,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s  %(levelname)-8s  %(message)s"))

    # Module loggers are named after their modules, so attach to the root
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)
    return logging.getLogger("modassetmanager"), log_dir


def install_crash_handler(logger: logging.Logger, log_dir: Path):
    # Python-level unhandled exceptions
    def handle_exception(exc_type, exc_value, exc_tb):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)
            return
        logger.critical(
            "Unhandled exception:\n%s",
            "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
        )

    sys.excepthook = handle_exception

    # C-level crashes (segfault, abort): faulthandler writes to a separate
    # file because it can't use Python logging machinery after a crash
    crash_file = log_dir / "crash.log"
    faulthandler.enable(open(crash_file, "w"), all_threads=True)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mod Asset Manager")
    parser.add_argument("--mods-dir")
    parser.add_argument("--game")
    parser.add_argument("--data-dir")
    parser.add_argument("--settings-org", default="ModAssetManager")
    parser.add_argument("--settings-app", default="ModAssetManager")
    parser.add_argument("--no-persist-settings", action="store_true")

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("scan", help="Scan the mods folder and update the index")
    subparsers.add_parser("verify", help="Repair index state from the folders on disk")

    list_parser = subparsers.add_parser("list", help="List categories, entities or assets")
    list_parser.add_argument("--category")
    list_parser.add_argument("--entity")

    toggle_parser = subparsers.add_parser("toggle", help="Toggle one asset")
    toggle_parser.add_argument("entity")
    toggle_parser.add_argument("asset_id", type=int)

    for name, desc in (("enable", "Enable assets"), ("disable", "Disable assets")):
        p = subparsers.add_parser(name, help=desc)
        p.add_argument("asset_ids", type=int, nargs="+")

    analyze_parser = subparsers.add_parser("analyze", help="Analyse a mod archive")
    analyze_parser.add_argument("archive")

    import_parser = subparsers.add_parser("import", help="Import a mod archive")
    import_parser.add_argument("archive")
    import_parser.add_argument("--entity")
    import_parser.add_argument("--name")
    import_parser.add_argument("--root")
    import_parser.add_argument("--extract-all", action="store_true")
    import_parser.add_argument("--preset", type=int, action="append", default=[])

    preset_parser = subparsers.add_parser("preset", help="Manage presets")
    preset_sub = preset_parser.add_subparsers(dest="preset_command", required=True)
    preset_sub.add_parser("list")
    p = preset_sub.add_parser("create")
    p.add_argument("name")
    for name in ("apply", "overwrite", "delete"):
        p = preset_sub.add_parser(name)
        p.add_argument("preset_id", type=int)
    p = preset_sub.add_parser("favorite")
    p.add_argument("preset_id", type=int)
    p.add_argument("--off", action="store_true")

    delete_parser = subparsers.add_parser("delete", help="Delete an asset and its folder")
    delete_parser.add_argument("asset_id", type=int)

    keys_parser = subparsers.add_parser("keybinds", help="Show an asset's keybinds")
    keys_parser.add_argument("asset_id", type=int)

    open_parser = subparsers.add_parser("open", help="Open an asset's folder")
    open_parser.add_argument("asset_id", type=int)

    launch_parser = subparsers.add_parser("launch", help="Launch an executable")
    launch_parser.add_argument("path")
    launch_parser.add_argument("--no-elevation", action="store_true")

    return parser.parse_args(argv)


def _print_progress(event):
    if event.phase.value == "progress":
        print(f"  [{event.processed}/{event.total}] {event.message}")
    elif event.phase.is_terminal:
        print(f"{event.name}: {event.message}")


def run_command(args: argparse.Namespace, manager) -> int:
    if args.command == "scan":
        print(manager.scan_mods().result().message())
    elif args.command == "verify":
        report = manager.verify_consistency()
        print(f"Repaired {len(report.repaired)}, missing {len(report.missing)}, "
              f"conflicting {len(report.conflicting)}")
    elif args.command == "list":
        if args.entity:
            for a in manager.get_assets_for_entity(args.entity):
                print(f"{a.id:5}  {'on ' if a.is_enabled else 'off'}  {a.name}  ({a.folder_name})")
        elif args.category:
            for row in manager.get_entities_by_category_with_counts(args.category):
                print(f"{row.entity.slug:30} {row.enabled_mods}/{row.total_mods}  {row.entity.name}")
        else:
            for c in manager.get_categories():
                print(f"{c.slug:20} {c.name}")
    elif args.command == "toggle":
        state = manager.toggle_asset_enabled(args.entity, args.asset_id)
        print("enabled" if state else "disabled")
    elif args.command in ("enable", "disable"):
        outcome = manager.bulk_toggle(args.asset_ids, args.command == "enable").result()
        return 0 if outcome.fail_count == 0 else 1
    elif args.command == "analyze":
        a = manager.analyze_archive(args.archive)
        print(f"Suggested root: {a.suggested_root!r}")
        print(f"Name: {a.deduced_mod_name}  Author: {a.deduced_author}")
        print(f"Entity: {a.deduced_entity_slug}  Category: {a.deduced_category_slug}")
        for root in a.likely_roots:
            print(f"  candidate root: {root}")
    elif args.command == "import":
        analysis = manager.analyze_archive(args.archive)
        entity = args.entity or analysis.deduced_entity_slug
        if not entity:
            print("Could not deduce the target entity; pass --entity", file=sys.stderr)
            return 2
        root = args.root if args.root is not None else analysis.suggested_root
        asset = manager.import_archive(
            analysis, entity, {"name": args.name or analysis.deduced_mod_name or "",
                               "author": analysis.deduced_author},
            chosen_root=root, extract_all=args.extract_all, preset_ids=args.preset,
        )
        print(f"Imported asset {asset.id}: {asset.clean_path}")
    elif args.command == "preset":
        return _run_preset(args, manager)
    elif args.command == "delete":
        print(f"Deleted {manager.delete_asset(args.asset_id).name}")
    elif args.command == "keybinds":
        for bind in manager.get_ini_keybinds(args.asset_id):
            print(f"{bind.title:30} {bind.key}")
    elif args.command == "open":
        manager.open_asset_folder(args.asset_id)
    elif args.command == "launch":
        manager.launch_executable(args.path, allow_elevation=not args.no_elevation)
    else:
        raise SystemExit(f"Unhandled command: {args.command}")
    return 0


def _run_preset(args, manager) -> int:
    cmd = args.preset_command
    if cmd == "list":
        for p in manager.get_presets():
            star = "*" if p.is_favorite else " "
            print(f"{p.id:4} {star} {p.name}  ({len(p.asset_ids)} mods)")
    elif cmd == "create":
        print(f"Created preset {manager.create_preset(args.name).id}")
    elif cmd == "apply":
        outcome = manager.apply_preset(args.preset_id).result()
        return 0 if outcome.fail_count == 0 else 1
    elif cmd == "overwrite":
        manager.overwrite_preset(args.preset_id)
    elif cmd == "delete":
        manager.delete_preset(args.preset_id)
    elif cmd == "favorite":
        manager.toggle_preset_favorite(args.preset_id, not args.off)
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)

    from settings import AppSettings
    settings = AppSettings(args.settings_org, args.settings_app,
                           persist=not args.no_persist_settings)
    if args.data_dir:
        settings.data_dir = args.data_dir
    if args.mods_dir:
        settings.mods_folder_path = args.mods_dir

    logger, log_dir = setup_logging(settings.data_dir)
    install_crash_handler(logger, log_dir)
    logger.info("Starting Mod Asset Manager")

    from mod_manager import ModManager
    try:
        if args.game:
            settings.active_game = args.game
        else:
            settings.apply_requested_game()
        manager = ModManager.from_settings(settings)
    except ModManagerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    manager.channel.subscribe(_print_progress)
    try:
        return run_command(args, manager)
    except ModManagerError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        manager.shutdown()
        settings.sync()


if __name__ == "__main__":
    raise SystemExit(main())
