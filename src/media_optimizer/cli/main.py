"""命令行入口。"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from media_optimizer.core.config import (
    BackupConfig,
    OptimizerConfig,
    QualityConfig,
    RemoteConfig,
    ResizeConfig,
)
from media_optimizer.core.exceptions import MediaOptimizerError
from media_optimizer.core.models import RecordStatus
from media_optimizer.core.progress import BulkProgress, ProgressUpdate
from media_optimizer.service import MediaOptimizer
from media_optimizer.utils.logging import setup_logging
from media_optimizer.utils.sizes import format_file_size

app = typer.Typer(help="媒体库图片压缩优化工具。")
console = Console()

LOG_STYLES = {"success": "green", "skipped": "yellow", "failed": "red"}


def _optimizer(ctx: typer.Context) -> MediaOptimizer:
    return ctx.obj


def _build_progress_callback(progress: Progress):
    task_id: Optional[int] = None

    def callback(update: ProgressUpdate) -> None:
        nonlocal task_id
        for entry in update.log:
            progress.log(f"[{LOG_STYLES.get(entry.type, 'white')}]{entry.message}")
        if update.total == 0:
            return
        if task_id is None:
            task_id = progress.add_task("优化图片", total=update.total)
        progress.update(task_id, total=update.total, completed=update.completed)

    return callback


@app.callback()
def main(  # noqa: PLR0913
    ctx: typer.Context,
    media_root: Path = typer.Option(Path("."), "--media-root", "-r", help="媒体库根目录"),
    database: Optional[Path] = typer.Option(None, "--db", help="SQLite 数据库路径，默认位于媒体库根目录"),
    backup: bool = typer.Option(False, "--backup/--no-backup", help="优化前备份原图"),
    backup_dir: Optional[Path] = typer.Option(None, "--backup-dir", help="备份目录"),
    retention_days: int = typer.Option(30, "--retention-days", help="备份保留天数"),
    jpeg_quality: int = typer.Option(82, "--jpeg-quality", help="JPEG 质量 1-100"),
    png_quality: int = typer.Option(90, "--png-quality", help="PNG 质量 1-100"),
    webp_quality: int = typer.Option(80, "--webp-quality", help="WebP 质量 1-100"),
    max_width: int = typer.Option(0, "--max-width", help="最大宽度，0 表示不限制"),
    max_height: int = typer.Option(0, "--max-height", help="最大高度，0 表示不限制"),
    min_size: int = typer.Option(10, "--min-size-kb", help="小于等于该大小（KB）的文件不优化"),
    service: str = typer.Option("resmushit", "--service", help="远程服务 resmushit/tinypng"),
    tinypng_key: str = typer.Option("", "--tinypng-key", envvar="MEDIA_OPTIMIZER_TINYPNG_KEY", help="TinyPNG API key"),
    public_root: Optional[Path] = typer.Option(None, "--public-root", help="对外发布的本地目录，默认为媒体库根目录"),
    public_base_url: str = typer.Option("", "--public-base-url", help="public-root 对应的 URL 前缀"),
    exclude_variant: List[str] = typer.Option([], "--exclude-variant", help="不优化的缩略图尺寸，如 150x150"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="日志文件路径"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="输出调试日志"),
) -> None:
    """公共参数，在任一子命令之前解析。"""

    setup_logging(logging.DEBUG if verbose else logging.INFO, log_file)

    config = OptimizerConfig(
        media_root=media_root,
        database=database,
        quality=QualityConfig(jpeg=jpeg_quality, png=png_quality, webp=webp_quality),
        resize=ResizeConfig(max_width=max_width, max_height=max_height),
        backup=BackupConfig(enabled=backup, backup_dir=backup_dir, retention_days=retention_days),
        remote=RemoteConfig(
            service=service,
            tinypng_api_key=tinypng_key,
            public_root=public_root,
            public_base_url=public_base_url,
        ),
        min_size=min_size * 1024,
        exclude_variants=tuple(exclude_variant),
    )
    try:
        optimizer = MediaOptimizer(config)
    except MediaOptimizerError as exc:
        typer.echo(f"配置错误：{exc}", err=True)
        raise typer.Exit(code=2) from exc

    ctx.obj = optimizer
    ctx.call_on_close(optimizer.close)


@app.command("scan")
def scan_cli(
    ctx: typer.Context,
    root: Optional[Path] = typer.Argument(None, help="扫描目录，默认为媒体库根目录"),
) -> None:
    """扫描目录并登记图片。"""

    items = _optimizer(ctx).scan(root.expanduser().resolve() if root else None)
    typer.echo(f"已登记 {len(items)} 个条目。")


@app.command("backend")
def backend_cli(ctx: typer.Context) -> None:
    """显示当前使用的优化后端。"""

    optimizer = _optimizer(ctx)
    table = Table("后端", "可用")
    for kind, ok in optimizer.selector.available().items():
        table.add_row(kind.value, "是" if ok else "否")
    console.print(table)
    typer.echo(f"当前后端：{optimizer.get_backend_kind().value}")


@app.command("optimize")
def optimize_cli(
    ctx: typer.Context,
    item_id: int = typer.Argument(..., help="条目 ID"),
    force: bool = typer.Option(False, "--force", "-f", help="已优化的条目也重新优化"),
) -> None:
    """立即优化单个条目。"""

    try:
        record = _optimizer(ctx).process_one(item_id, force=force)
    except MediaOptimizerError as exc:
        typer.echo(f"错误：{exc}", err=True)
        raise typer.Exit(code=1) from exc

    typer.echo(
        f"状态：{record.status.value}，方式：{record.method or '-'}，"
        f"{format_file_size(record.original_size)} -> {format_file_size(record.optimized_size)}，"
        f"节省 {format_file_size(record.savings)}"
    )
    if record.error:
        typer.echo(f"说明：{record.error}")
    if record.status is RecordStatus.FAILED:
        raise typer.Exit(code=1)


@app.command("bulk")
def bulk_cli(
    ctx: typer.Context,
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="每批条目数"),
    delay: float = typer.Option(0.5, "--delay", help="批次之间的等待秒数"),
    resume: bool = typer.Option(False, "--resume", help="从上次暂停的位置继续"),
    restart: bool = typer.Option(False, "--restart", help="忽略正在运行的任务，重新开始"),
) -> None:
    """分批优化所有未优化的条目，直到完成或被暂停。"""

    optimizer = _optimizer(ctx)
    if resume:
        optimizer.resume()
    else:
        optimizer.start_bulk(limit, force=restart)

    pending = optimizer.get_stats(fresh=True).unoptimized_items
    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
    )
    tracker = BulkProgress(pending, _build_progress_callback(progress))

    with progress:
        while True:
            result = optimizer.run_batch(limit=limit)
            tracker.advance(result)
            if not result.should_continue:
                break
            time.sleep(delay)

    cursor = optimizer.cursor
    if cursor.paused:
        typer.echo(f"已暂停，偏移 {cursor.offset}，使用 --resume 继续。")
    typer.echo(
        f"处理完成：成功 {cursor.succeeded} 个，跳过 {cursor.skipped} 个，失败 {cursor.failed} 个，"
        f"共节省 {format_file_size(cursor.savings)}。"
    )


@app.command("pause")
def pause_cli(ctx: typer.Context) -> None:
    """暂停正在进行的批量优化。"""

    cursor = _optimizer(ctx).pause()
    typer.echo(f"已设置暂停标记，当前偏移 {cursor.offset}。")


@app.command("stats")
def stats_cli(ctx: typer.Context) -> None:
    """显示媒体库统计。"""

    optimizer = _optimizer(ctx)
    stats = optimizer.get_stats(fresh=True)
    summary = optimizer.log_summary()

    table = Table("指标", "数值")
    table.add_row("条目总数", str(stats.total_items))
    table.add_row("已优化", str(stats.optimized_items))
    table.add_row("未优化", str(stats.unoptimized_items))
    table.add_row("累计节省", format_file_size(stats.total_savings))
    table.add_row("优化次数", str(summary.total_optimizations))
    table.add_row("失败次数", str(summary.failed_optimizations))
    table.add_row("平均节省", format_file_size(int(summary.average_savings)))
    table.add_row("当前后端", optimizer.get_backend_kind().value)
    console.print(table)


@app.command("backup")
def backup_cli(
    ctx: typer.Context,
    item_id: Optional[int] = typer.Argument(None, help="条目 ID，省略时只显示备份统计"),
) -> None:
    """为条目创建备份，或显示备份统计。"""

    optimizer = _optimizer(ctx)
    if item_id is not None:
        if not optimizer.create_backup(item_id):
            typer.echo("备份失败。", err=True)
            raise typer.Exit(code=1)
        typer.echo(f"已备份条目 {item_id}。")
        return

    stats = optimizer.backup_stats()
    typer.echo(f"备份文件 {stats.total_files} 个，共 {format_file_size(stats.total_size)}。")


@app.command("restore")
def restore_cli(ctx: typer.Context, item_id: int = typer.Argument(..., help="条目 ID")) -> None:
    """从备份还原条目的原图。"""

    if not _optimizer(ctx).restore(item_id):
        typer.echo("还原失败：未找到可用的备份。", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"已还原条目 {item_id}。")


@app.command("cleanup-backups")
def cleanup_backups_cli(
    ctx: typer.Context,
    days: Optional[int] = typer.Option(None, "--days", help="删除早于该天数的备份，默认使用保留天数"),
) -> None:
    """清理过期备份。"""

    removed = _optimizer(ctx).cleanup_backups(days)
    typer.echo(f"已删除 {removed} 个过期备份。")


@app.command("test-connection")
def test_connection_cli(
    ctx: typer.Context,
    service: Optional[str] = typer.Argument(None, help="服务名称，默认使用 --service"),
    probe: bool = typer.Option(False, "--probe", help="实际发起网络请求检测可达性"),
) -> None:
    """检测远程服务配置。"""

    status = _optimizer(ctx).test_backend_connection(service, probe=probe)
    typer.echo(status.message)
    if not status.ok:
        raise typer.Exit(code=1)


@app.command("queue-add")
def queue_add_cli(
    ctx: typer.Context,
    item_id: int = typer.Argument(..., help="条目 ID"),
    priority: int = typer.Option(5, "--priority", "-p", help="优先级 1-10，数字越小越先处理"),
) -> None:
    """将条目加入后台优化队列。"""

    try:
        added = _optimizer(ctx).enqueue(item_id, priority)
    except MediaOptimizerError as exc:
        typer.echo(f"错误：{exc}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo("已加入队列。" if added else "条目已在队列中。")


@app.command("queue-work")
def queue_work_cli(
    ctx: typer.Context,
    max_items: Optional[int] = typer.Option(None, "--max-items", help="本次最多处理的条目数"),
    cleanup_days: int = typer.Option(7, "--cleanup-days", help="清理早于该天数的已结束条目"),
) -> None:
    """处理后台队列。"""

    optimizer = _optimizer(ctx)
    processed = optimizer.work_queue(max_items)
    removed = optimizer.cleanup_queue(cleanup_days)
    typer.echo(f"处理了 {processed} 个队列条目，清理 {removed} 个旧条目。")


@app.command("report")
def report_cli(
    ctx: typer.Context,
    output: Path = typer.Option(Path("media-optimizer-report.csv"), "--output", "-o", help="CSV 报告路径"),
) -> None:
    """导出优化记录报告。"""

    optimizer = _optimizer(ctx)
    report = optimizer.write_report(output.expanduser().resolve())
    stats = optimizer.get_stats(fresh=True)
    if stats.total_items:
        ratio = stats.optimized_items / stats.total_items * 100
        typer.echo(f"已优化比例：{ratio:.1f}%")
    typer.echo(f"报告文件：{report}")


if __name__ == "__main__":
    app()
