"""plantdiag 命令行入口

使用方式：
    python -m plantdiag init                          # 初始化数据库
    python -m plantdiag plant-add --name "绿萝"       # 新增植物档案
    python -m plantdiag plants                        # 列出植物档案
    python -m plantdiag diagnose PLANT_ID -p "叶子发黄"  # 开始诊断
    python -m plantdiag reply SESSION_ID "每天浇水"   # 回复提问
    python -m plantdiag history PLANT_ID              # 诊断历史
    python -m plantdiag sessions -n 5                 # 最近的会话
    python -m plantdiag show SESSION_ID               # 会话详情
    python -m plantdiag api                           # 启动 FastAPI 服务
"""
import logging
import sys

import click


@click.group()
@click.option("--db", default=None, help="数据库文件路径（默认: data/plantdiag.db）")
@click.option("--config", "config_path", default=None, help="配置文件路径（默认: config.yaml）")
@click.option("-v", "--verbose", is_flag=True, help="输出调试日志")
@click.pass_context
def main(ctx, db: str, config_path: str, verbose: bool):
    """植物健康诊断助手"""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )
    ctx.obj = {"db": db, "config_path": config_path}


def _cli(ctx):
    from plantdiag.cli.main import DiagnosisCLI
    return DiagnosisCLI(db_path=ctx.obj["db"], config_path=ctx.obj["config_path"])


@main.command()
@click.pass_context
def init(ctx):
    """初始化数据库（仅创建表结构）"""
    from plantdiag.scripts.init_db import init_database

    try:
        init_database(ctx.obj["db"])
        click.echo("\n[OK] 数据库初始化成功")
    except Exception as e:
        click.echo(f"\n[ERROR] 初始化失败: {e}", err=True)
        sys.exit(1)


@main.command("plant-add")
@click.option("--name", required=True, help="植物名称")
@click.option("--light", default=None, help="光照需求")
@click.option("--water", default=None, help="浇水需求")
@click.option("--humidity", default=None, help="湿度需求")
@click.option("--temperature", default=None, help="温度需求")
@click.option("--notes", default="", help="其他养护说明")
@click.pass_context
def plant_add(ctx, name, light, water, humidity, temperature, notes):
    """新增植物档案"""
    from plantdiag.models import CareRequirements

    overrides = {
        "light": light,
        "water": water,
        "humidity": humidity,
        "temperature": temperature,
    }
    care = CareRequirements(
        care_instructions=notes,
        **{k: v for k, v in overrides.items() if v is not None},
    )
    sys.exit(_cli(ctx).add_plant(name, care))


@main.command()
@click.pass_context
def plants(ctx):
    """列出植物档案"""
    sys.exit(_cli(ctx).list_plants())


@main.command()
@click.argument("plant_id")
@click.option("-p", "--problem", required=True, help="问题描述")
@click.option("-i", "--interactive", is_flag=True, help="交互模式：持续回答直到诊断结束")
@click.pass_context
def diagnose(ctx, plant_id: str, problem: str, interactive: bool):
    """开始诊断（同一问题已有进行中的会话时继续该会话）"""
    sys.exit(_cli(ctx).diagnose(plant_id, problem, interactive=interactive))


@main.command()
@click.argument("session_id")
@click.argument("text")
@click.option("-i", "--interactive", is_flag=True, help="交互模式：持续回答直到诊断结束")
@click.pass_context
def reply(ctx, session_id: str, text: str, interactive: bool):
    """回复诊断提问"""
    sys.exit(_cli(ctx).reply(session_id, text, interactive=interactive))


@main.command()
@click.argument("plant_id")
@click.pass_context
def history(ctx, plant_id: str):
    """查看某植物的诊断历史"""
    sys.exit(_cli(ctx).history(plant_id))


@main.command()
@click.option("-n", "--limit", default=10, type=int, help="显示数量")
@click.pass_context
def sessions(ctx, limit: int):
    """查看最近更新的诊断会话"""
    sys.exit(_cli(ctx).recent_sessions(limit))


@main.command()
@click.argument("session_id")
@click.pass_context
def show(ctx, session_id: str):
    """查看会话详情"""
    sys.exit(_cli(ctx).show(session_id))


@main.command("api")
@click.option(
    "--host",
    default="127.0.0.1",
    help="服务监听地址",
)
@click.option(
    "--port",
    default=8000,
    type=int,
    help="服务监听端口",
)
def serve(host: str, port: int):
    """启动 FastAPI 服务"""
    import uvicorn
    from plantdiag.api.main import app

    click.echo(f"正在启动服务: http://{host}:{port}")
    click.echo(f"API 文档: http://{host}:{port}/docs")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
