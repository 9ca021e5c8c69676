# ABOUTME: Lookup tables of structured commands per JavaScript package manager
# ABOUTME: Install, run-script and start commands plus per-framework build and start commands

from typing import Dict, Optional, Tuple

from webserver_setup.models import AppKind, Command, FrontendMode, PackageManager

# Frozen-lockfile install first, plain install as the fallback
INSTALL_COMMANDS: Dict[PackageManager, Tuple[Command, Command]] = {
    PackageManager.NPM: (Command("npm", ("ci",)), Command("npm", ("install",))),
    PackageManager.PNPM: (Command("pnpm", ("install", "--frozen-lockfile")), Command("pnpm", ("install",))),
    PackageManager.YARN: (Command("yarn", ("install", "--frozen-lockfile")), Command("yarn", ("install",))),
    PackageManager.BUN: (Command("bun", ("install", "--frozen-lockfile")), Command("bun", ("install",))),
}

# Backends skip dev dependencies
PRODUCTION_INSTALL_COMMANDS: Dict[PackageManager, Tuple[Command, Command]] = {
    PackageManager.NPM: (Command("npm", ("ci", "--omit=dev")), Command("npm", ("install", "--omit=dev"))),
    PackageManager.PNPM: (Command("pnpm", ("install", "--frozen-lockfile", "--prod")),
                          Command("pnpm", ("install", "--prod"))),
    PackageManager.YARN: (Command("yarn", ("install", "--frozen-lockfile", "--production")),
                          Command("yarn", ("install", "--production"))),
    PackageManager.BUN: (Command("bun", ("install", "--frozen-lockfile", "--production")),
                         Command("bun", ("install", "--production"))),
}

# How the package manager binary itself gets onto the host; npm ships with Node.js
BINARY_INSTALL_COMMANDS: Dict[PackageManager, Optional[Command]] = {
    PackageManager.NPM: None,
    PackageManager.PNPM: Command("npm", ("install", "-g", "pnpm")),
    PackageManager.YARN: Command("npm", ("install", "-g", "yarn")),
    PackageManager.BUN: Command("npm", ("install", "-g", "bun")),
}

PYTHON_INSTALL_COMMANDS: Tuple[Command, ...] = (
    Command("python3", ("-m", "venv", "venv")),
    Command("venv/bin/pip", ("install", "--upgrade", "pip")),
    Command("venv/bin/pip", ("install", "uvicorn", "gunicorn")),
    Command("venv/bin/pip", ("install", "-r", "requirements.txt")),
)

# Build script and any extra arguments per (kind, mode); absent means no build step
BUILD_SCRIPTS: Dict[Tuple[AppKind, FrontendMode], Tuple[str, Tuple[str, ...]]] = {
    (AppKind.NEXTJS, FrontendMode.SSR): ("build", ()),
    (AppKind.NEXTJS, FrontendMode.STATIC): ("build", ()),
    (AppKind.NEXTJS, FrontendMode.STANDALONE): ("build", ()),
    (AppKind.NUXTJS, FrontendMode.SSR): ("build", ()),
    (AppKind.NUXTJS, FrontendMode.STATIC): ("generate", ()),
    (AppKind.NUXTJS, FrontendMode.SPA): ("build", ()),
    (AppKind.REACT, FrontendMode.SPA): ("build", ()),
    (AppKind.VUE, FrontendMode.SPA): ("build", ()),
    (AppKind.ANGULAR, FrontendMode.SPA): ("build", ("--configuration", "production")),
    (AppKind.SVELTE, FrontendMode.SSR): ("build", ()),
    (AppKind.SVELTE, FrontendMode.STATIC): ("build", ()),
    (AppKind.SVELTE, FrontendMode.SPA): ("build", ()),
    (AppKind.NODEJS, FrontendMode.NONE): ("build", ()),
}

# Server entry points run directly by node rather than through the package manager
NODE_ENTRY_POINTS: Dict[Tuple[AppKind, FrontendMode], str] = {
    (AppKind.NEXTJS, FrontendMode.STANDALONE): "server.js",
    (AppKind.NUXTJS, FrontendMode.SSR): ".output/server/index.mjs",
    (AppKind.SVELTE, FrontendMode.SSR): "build/index.js",
}


def install_commands(manager: PackageManager, production: bool = False) -> Tuple[Command, Command]:
    """Return (frozen, fallback) dependency install commands"""
    table = PRODUCTION_INSTALL_COMMANDS if production else INSTALL_COMMANDS
    return table[manager]


def run_script(manager: PackageManager, script: str, extra_args: Tuple[str, ...] = ()) -> Command:
    """Run a package.json script; npm needs ``--`` before forwarded arguments"""
    args: Tuple[str, ...] = ("run", script)
    if extra_args:
        if manager is PackageManager.NPM:
            args += ("--",)
        args += tuple(extra_args)
    return Command(manager.value, args)


def start_command(manager: PackageManager) -> Command:
    return Command(manager.value, ("start",))


def build_command(kind: AppKind, mode: FrontendMode, manager: PackageManager) -> Optional[Command]:
    """Build command for a kind/mode, or None when nothing is built"""
    entry = BUILD_SCRIPTS.get((kind, mode))
    if entry is None:
        return None
    script, extra_args = entry
    return run_script(manager, script, extra_args)


def framework_start_command(kind: AppKind, mode: FrontendMode, manager: PackageManager) -> Optional[Command]:
    """Default long-running start command for a kind/mode"""
    entry_point = NODE_ENTRY_POINTS.get((kind, mode))
    if entry_point:
        return Command("node", (entry_point,))
    if kind is AppKind.NEXTJS and mode is FrontendMode.SSR:
        return start_command(manager)
    if kind is AppKind.NODEJS:
        return start_command(manager)
    return None


def python_start_command(port: int) -> Command:
    return Command("uvicorn", ("app.main:app", "--host", "127.0.0.1", "--port", str(port)))
