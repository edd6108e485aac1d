"""Common command presets shown on the dashboard."""

from __future__ import annotations

from fleetcmd.models.commands import CommandKind, CommandPreset, PresetCategory


def _preset(label: str, text: str, kind: CommandKind) -> CommandPreset:
    return CommandPreset(label=label, text=text, kind=kind)


PRESETS: list[PresetCategory] = [
    PresetCategory(
        category="Artisan",
        commands=[
            _preset("Migrate Database", "php artisan migrate --force", CommandKind.artisan),
            _preset("Clear Cache", "php artisan cache:clear", CommandKind.artisan),
            _preset("Clear Config", "php artisan config:clear", CommandKind.artisan),
            _preset("Clear Routes", "php artisan route:clear", CommandKind.artisan),
            _preset("Optimize", "php artisan optimize", CommandKind.artisan),
            _preset("Restart Queue Workers", "php artisan queue:restart", CommandKind.artisan),
        ],
    ),
    PresetCategory(
        category="Composer",
        commands=[
            _preset("Install Dependencies", "composer install --no-interaction", CommandKind.composer),
            _preset("Update Dependencies", "composer update --no-interaction", CommandKind.composer),
            _preset("Dump Autoload", "composer dump-autoload", CommandKind.composer),
        ],
    ),
    PresetCategory(
        category="Git",
        commands=[
            _preset("Pull Latest", "git pull origin main", CommandKind.git),
            _preset("Check Status", "git status", CommandKind.git),
            _preset("View Log", "git log --oneline -10", CommandKind.git),
        ],
    ),
    PresetCategory(
        category="System",
        commands=[
            _preset("Disk Usage", "df -h", CommandKind.system),
            _preset("Memory", "free -m", CommandKind.system),
            _preset("Uptime", "uptime", CommandKind.system),
        ],
    ),
]


def list_presets() -> list[PresetCategory]:
    return PRESETS
