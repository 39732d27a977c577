"""
tccsync CLI Entry Point
"""

import sys
import asyncio
from pathlib import Path
from typing import Optional
import click
import structlog

from tccsync import __version__
from tccsync.backends.cloudflare import CloudflareBackend
from tccsync.backends.github import GitHubBackend
from tccsync.backends.transfer import migrate_github_to_cloudflare
from tccsync.bidirectional.coordinator import SyncContext, SyncCoordinator
from tccsync.bidirectional.sync_engine import SyncReport, SyncResult
from tccsync.config.models import CloudflareConfig, GitHubConfig, LoggingConfig, SyncSettings
from tccsync.config.parser import ConfigParser
from tccsync.core.local_store import LocalStore
from tccsync.errors import PersistenceError, SyncError
from tccsync.utils.logger import setup_logging

logger = structlog.get_logger()


@click.group()
@click.option(
    '--state-dir',
    envvar='TCCSYNC_STATE_DIR',
    type=click.Path(file_okay=False),
    help='状态目录 [默认: ~/.tccsync]'
)
@click.option(
    '--log-level',
    default='WARNING',
    type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
    help='日志级别 [默认: WARNING]'
)
@click.option(
    '--log-format',
    default='text',
    type=click.Choice(['text', 'json'], case_sensitive=False),
    help='日志格式 [默认: text]'
)
@click.option(
    '--log-file',
    type=str,
    help='日志文件路径（启用文件日志）'
)
@click.version_option(version=__version__, prog_name='tccsync')
@click.pass_context
def main(ctx: click.Context, state_dir: Optional[str], log_level: str, log_format: str, log_file: Optional[str]):
    """离线优先的数据同步工具"""
    setup_logging(level=log_level.upper(), log_format=log_format.lower(), log_file=log_file)

    ctx.ensure_object(dict)
    ctx.obj['parser'] = ConfigParser(state_dir)
    ctx.obj['logging'] = LoggingConfig(level=log_level.upper(), format=log_format.lower(), file_path=log_file)


# ========== 配置 ==========

@main.group()
def config():
    """管理同步后端配置"""


@config.command('github')
@click.option('--token', required=True, help='GitHub personal access token')
@click.option('--owner', required=True, help='仓库所有者')
@click.option('--repo', required=True, help='仓库名')
@click.option('--data-path', default='data/tasks.json', show_default=True, help='数据文件路径（其目录为基础路径）')
@click.pass_obj
def config_github(obj, token: str, owner: str, repo: str, data_path: str):
    """配置 GitHub 后端"""
    parser: ConfigParser = obj['parser']
    _save_config(lambda: parser.save_github(GitHubConfig(token=token, owner=owner, repo=repo, data_path=data_path)))
    click.echo(f"GitHub backend configured: {owner}/{repo} ({data_path})")


@config.command('cloudflare')
@click.option('--api-url', required=True, help='同步服务地址')
@click.option('--api-key', default=None, help='API Key（通过 X-API-Key 发送）')
@click.pass_obj
def config_cloudflare(obj, api_url: str, api_key: Optional[str]):
    """配置 Cloudflare 后端"""
    parser: ConfigParser = obj['parser']
    _save_config(lambda: parser.save_cloudflare(CloudflareConfig(api_url=api_url, api_key=api_key)))
    click.echo(f"Cloudflare backend configured: {api_url}")


@config.command('clear')
@click.option(
    '--backend',
    default='all',
    type=click.Choice(['github', 'cloudflare', 'all'], case_sensitive=False),
    help='要清除的后端 [默认: all]'
)
@click.pass_obj
def config_clear(obj, backend: str):
    """清除后端配置"""
    parser: ConfigParser = obj['parser']
    if backend in ('github', 'all'):
        parser.delete_github()
    if backend in ('cloudflare', 'all'):
        parser.delete_cloudflare()
    click.echo(f"Cleared backend config: {backend}")


@config.command('show')
@click.pass_obj
def config_show(obj):
    """显示当前配置（隐藏密钥）"""
    parser: ConfigParser = obj['parser']
    settings = parser.parse(logging_config=obj['logging'])

    click.echo(f"State dir: {settings.state_dir}")
    click.echo(f"Active backend: {settings.detect_backend()}")

    if settings.github:
        github = settings.github
        click.echo("GitHub:")
        click.echo(f"  token:     {_mask(github.token)}")
        click.echo(f"  owner:     {github.owner}")
        click.echo(f"  repo:      {github.repo}")
        click.echo(f"  data_path: {github.data_path}")

    if settings.cloudflare:
        cloudflare = settings.cloudflare
        click.echo("Cloudflare:")
        click.echo(f"  api_url: {cloudflare.api_url}")
        click.echo(f"  api_key: {_mask(cloudflare.api_key)}")


# ========== 同步 ==========

@main.command()
@click.option(
    '--on-conflict',
    default='prompt',
    type=click.Choice(['prompt', 'local', 'remote', 'cancel'], case_sensitive=False),
    help='冲突时的处理方式 [默认: prompt]'
)
@click.option(
    '--timeout',
    default=30.0,
    type=float,
    help='请求超时（秒） [默认: 30]'
)
@click.pass_obj
def sync(obj, on_conflict: str, timeout: float):
    """执行一次同步"""
    parser: ConfigParser = obj['parser']

    try:
        report = asyncio.run(_run_sync(parser, obj['logging'], on_conflict.lower(), timeout))
    except PersistenceError as e:
        click.echo(f"error: {e}", err=True)
        sys.exit(1)

    if report.result == SyncResult.ERROR:
        sys.exit(1)


async def _run_sync(
    parser: ConfigParser,
    logging_config: LoggingConfig,
    on_conflict: str,
    timeout: float
) -> SyncReport:
    context = SyncContext.from_state_dir(
        str(parser.state_dir),
        sync=SyncSettings(request_timeout=timeout),
        logging_config=logging_config
    )
    coordinator = SyncCoordinator(context)

    try:
        report = await coordinator.sync_now()
        _echo_report(report)

        if report.result == SyncResult.CONFLICT:
            _echo_conflict(report)
            choice = on_conflict
            if choice == 'prompt':
                choice = click.prompt(
                    "Keep which version?",
                    type=click.Choice(['local', 'remote', 'cancel']),
                    default='cancel'
                )
            report = await coordinator.resolve_conflict(choice)
            _echo_report(report)

        return report
    finally:
        await coordinator.shutdown()


@main.command()
@click.pass_obj
def status(obj):
    """显示后端、水位线和记录数"""
    parser: ConfigParser = obj['parser']
    settings = parser.parse(logging_config=obj['logging'])
    store = LocalStore(settings.state_dir)
    snapshot = store.snapshot()

    click.echo(f"Backend:     {settings.detect_backend()}")
    click.echo(f"Last synced: {snapshot.last_synced.isoformat() if snapshot.last_synced else 'never'}")
    latest = snapshot.latest_edit()
    click.echo(f"Latest edit: {latest.isoformat() if latest else 'none'}")

    click.echo("Records:")
    for name, counts in snapshot.count().items():
        if counts['active'] or counts['deleted']:
            click.echo(f"  {name:<18} {counts['active']:>5} active  {counts['deleted']:>5} deleted")


# ========== 迁移 ==========

@main.group()
def migrate():
    """在后端之间迁移数据"""


@migrate.command('github-to-cloudflare')
@click.option('--api-url', default=None, help='Cloudflare 同步服务地址 [默认: 已保存的配置]')
@click.option('--api-key', default=None, help='Cloudflare API Key [默认: 已保存的配置]')
@click.option('--timeout', default=30.0, type=float, help='请求超时（秒） [默认: 30]')
@click.pass_obj
def migrate_github_to_cloudflare_cmd(obj, api_url: Optional[str], api_key: Optional[str], timeout: float):
    """把 GitHub 上的数据整体写入 Cloudflare（覆盖服务器数据）"""
    parser: ConfigParser = obj['parser']

    github = parser.load_github()
    if github is None or not github.is_complete():
        click.echo("error: GitHub backend is not configured", err=True)
        sys.exit(1)

    saved = parser.load_cloudflare() or CloudflareConfig()
    cloudflare = CloudflareConfig(api_url=api_url or saved.api_url, api_key=api_key or saved.api_key)
    if not cloudflare.is_complete():
        click.echo("error: Cloudflare api url is required (--api-url or config cloudflare)", err=True)
        sys.exit(1)

    click.echo(f"Migrating {github.owner}/{github.repo} -> {cloudflare.api_url}")

    try:
        report = asyncio.run(_run_migration(github, cloudflare, timeout))
    except SyncError as e:
        click.echo(f"error: {e.message}", err=True)
        sys.exit(1)

    for name, count in report.source_counts.items():
        click.echo(f"  {name:<18} {count:>5} -> {report.target_counts.get(name, 0)}")

    if not report.verified:
        click.echo("Migration finished with mismatched record counts, verify the data manually.", err=True)
        sys.exit(1)

    click.echo("Migration completed.")


async def _run_migration(github: GitHubConfig, cloudflare: CloudflareConfig, timeout: float):
    source = GitHubBackend(github, timeout=timeout)
    target = CloudflareBackend(cloudflare, timeout=timeout)
    try:
        return await migrate_github_to_cloudflare(source, target)
    finally:
        await source.aclose()
        await target.aclose()


# ========== 服务器 ==========

@main.command()
@click.option('--db-path', default='./tccsync.db', show_default=True, type=click.Path(dir_okay=False), help='SQLite 数据库路径')
@click.option('--host', default='127.0.0.1', show_default=True, help='监听地址')
@click.option('--port', default=8787, show_default=True, type=int, help='监听端口')
@click.option('--api-key', envvar='TCCSYNC_API_KEY', default=None, help='要求客户端提供的 API Key')
def serve(db_path: str, host: str, port: int, api_key: Optional[str]):
    """运行参考同步服务器"""
    import uvicorn
    from tccsync.web import create_app

    app = create_app(str(Path(db_path).expanduser()), api_key=api_key)

    logger.info("Starting sync server", host=host, port=port, db_path=db_path, auth_enabled=bool(api_key))
    click.echo(f"Sync server listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_level="warning")


# ========== 工具函数 ==========

def _save_config(save):
    try:
        save()
    except PersistenceError as e:
        click.echo(f"error: {e}", err=True)
        sys.exit(1)


def _mask(secret: Optional[str]) -> str:
    if not secret:
        return "(not set)"
    if len(secret) <= 8:
        return "****"
    return f"{secret[:4]}****{secret[-4:]}"


def _echo_report(report: SyncReport):
    click.echo(f"{report.result.value}: {report.message}")


def _echo_conflict(report: SyncReport):
    info = report.conflict.to_dict() if report.conflict else {}
    click.echo("Remote data changed on another device since the last sync.")
    click.echo(f"  local last modified:  {info.get('local_last_modified') or 'unknown'}")
    click.echo(f"  remote last modified: {info.get('remote_last_modified') or 'unknown'}")
    click.echo(f"  local records:  {_format_counts(info.get('local_counts') or {})}")
    click.echo(f"  remote records: {_format_counts(info.get('remote_counts') or {})}")


def _format_counts(counts) -> str:
    if not counts:
        return "none"
    return ", ".join(f"{name}={count}" for name, count in counts.items())


if __name__ == '__main__':
    main()
