"""CLI principal del monitor de precios de Mabrik."""
import sys

import click
from rich.console import Console
from rich.table import Table

from pricewatch.context import build_context
from pricewatch.database.reports import UserRepository
from pricewatch.database.repository import CategoryRepository, ScrapeRunRepository
from pricewatch.models.notification import ChannelType, UserRole
from pricewatch.utils.logger import get_logger

console = Console()
err_console = Console(stderr=True)
logger = get_logger(__name__)


def _emit(result):
    """Imprimir un resultado como JSON en stdout."""
    data = result.model_dump(mode="json") if hasattr(result, "model_dump") else result
    console.print_json(data=data, default=str)


def _fail(error: Exception):
    logger.error(f"Command failed: {error}")
    console.print_json(data={"error": error.__class__.__name__, "message": str(error)})
    sys.exit(1)


@click.group()
def cli():
    """Mabrik price watch - monitor de precios y stock"""
    pass


@cli.command()
def init():
    """Inicializar base de datos y categorías."""
    context = None
    try:
        context = build_context()
        seeded = context.seed_categories()
    except Exception as e:
        _fail(e)
    finally:
        if context is not None:
            context.close()
    _emit({"database": context.db.db_path, "categories_seeded": seeded})


@cli.command()
@click.argument('category')
@click.option('--diff', 'run_diff', is_flag=True, help='Ejecutar el diff al terminar')
def scrape(category, run_diff):
    """Scrapear una categoría (id o slug)."""
    context = None
    try:
        context = build_context()
        result = context.scrape(category)
        output = {"scrape": result.model_dump(mode="json")}
        if run_diff:
            output["diff"] = context.diff(result.scrape_run_id).model_dump(mode="json")
    except Exception as e:
        _fail(e)
    finally:
        if context is not None:
            context.close()
    _emit(output)


@cli.command()
@click.argument('scrape_run_id', type=int)
def diff(scrape_run_id):
    """Ejecutar el motor de diferencias sobre una corrida completada."""
    context = None
    try:
        context = build_context()
        result = context.diff(scrape_run_id)
    except Exception as e:
        _fail(e)
    finally:
        if context is not None:
            context.close()
    _emit(result)


@cli.command()
def digest():
    """Enviar digests pendientes a usuarios free."""
    context = None
    try:
        context = build_context()
        result = context.digest()
    except Exception as e:
        _fail(e)
    finally:
        if context is not None:
            context.close()
    _emit(result)


@cli.command(name='cleanup-stale')
@click.argument('minutes', required=False)
def cleanup_stale(minutes):
    """Marcar como fallidas las corridas RUNNING colgadas."""
    context = None
    try:
        context = build_context()
        result = context.cleanup_stale(minutes)
    except Exception as e:
        _fail(e)
    finally:
        if context is not None:
            context.close()
    _emit(result)


@cli.command()
@click.option('--once', is_flag=True, help='Ejecutar una sola pasada y salir')
def schedule(once):
    """Iniciar el scheduler (scraping, digest y limpieza)."""
    from pricewatch.scheduler.job_scheduler import PipelineScheduler

    context = None
    try:
        context = build_context()
        scheduler = PipelineScheduler(context)
        if once:
            results = scheduler.run_once()
        else:
            err_console.print("\n[bold cyan]Iniciando scheduler...[/bold cyan]")
            err_console.print("[dim]Presiona Ctrl+C para detener[/dim]\n")
            scheduler.start()
            return
    except Exception as e:
        _fail(e)
    finally:
        if context is not None:
            context.close()
    _emit({"runs": results})


@cli.command()
def categories():
    """Listar categorías y su próximo scraping."""
    context = build_context()
    with context.db.get_connection() as conn:
        rows = CategoryRepository(conn).list_all()
    context.close()

    if not rows:
        console.print("[yellow]No hay categorias. Ejecute 'init' primero[/yellow]")
        return

    table = Table(title=f"Categorias ({len(rows)})")
    table.add_column("ID", style="cyan", width=5)
    table.add_column("Slug", style="green")
    table.add_column("Nombre", style="yellow")
    table.add_column("Intervalo", style="blue", justify="right")
    table.add_column("Proximo", style="magenta")

    for category in rows:
        table.add_row(
            str(category.id),
            category.slug,
            category.name_et,
            f"{category.scrape_interval_hours}h",
            category.next_run_at.strftime("%Y-%m-%d %H:%M") if category.next_run_at else "-",
        )
    console.print(table)


@cli.command()
@click.option('--limit', default=20, help='Numero de corridas a mostrar')
def runs(limit):
    """Listar las corridas de scraping más recientes."""
    context = build_context()
    with context.db.get_connection() as conn:
        recent = ScrapeRunRepository(conn).list_recent(limit)
    context.close()

    if not recent:
        console.print("[yellow]No hay corridas registradas[/yellow]")
        return

    status_styles = {"completed": "green", "failed": "red", "running": "yellow"}
    table = Table(title=f"Corridas ({len(recent)})")
    table.add_column("ID", style="cyan", width=5)
    table.add_column("Cat", width=5)
    table.add_column("Estado")
    table.add_column("Inicio")
    table.add_column("Productos", justify="right")
    table.add_column("Nuevos", justify="right")
    table.add_column("Precios", justify="right")
    table.add_column("Error", style="red")

    for run in recent:
        style = status_styles.get(run.status.value, "white")
        table.add_row(
            str(run.id),
            str(run.category_id),
            f"[{style}]{run.status.value}[/{style}]",
            run.started_at.strftime("%Y-%m-%d %H:%M"),
            str(run.total_products),
            str(run.new_products),
            str(run.price_changes),
            (run.error_message or "")[:40],
        )
    console.print(table)


@cli.command(name='add-user')
@click.argument('email')
@click.option('--name', default=None, help='Nombre visible')
@click.option(
    '--role',
    type=click.Choice([r.value for r in UserRole], case_sensitive=False),
    default=UserRole.FREE.value,
)
@click.option('--subscribe', '-s', multiple=True, help='Slug o id de categoria (puede repetirse)')
def add_user(email, name, role, subscribe):
    """Crear un usuario con canal email y suscripciones."""
    context = None
    try:
        context = build_context()
        with context.db.transaction() as conn:
            users = UserRepository(conn)
            categories_repo = CategoryRepository(conn)
            user = users.create_user(email, name or email.split("@")[0], UserRole(role.lower()))
            channel = users.add_channel(user.id, email, ChannelType.EMAIL)
            subscribed = []
            for ref in subscribe:
                category = categories_repo.resolve(ref)
                if category is None:
                    raise click.BadParameter(f"Category not found: {ref}")
                users.subscribe(user.id, category.id)
                subscribed.append(category.slug)
    except Exception as e:
        _fail(e)
    finally:
        if context is not None:
            context.close()
    _emit({
        "user": user.model_dump(mode="json"),
        "channel_id": channel.id,
        "subscriptions": subscribed,
    })


if __name__ == '__main__':
    cli()
