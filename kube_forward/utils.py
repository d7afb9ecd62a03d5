"""
终端输出工具函数

面向操作者的状态行（带颜色标签），诊断信息走 logging。
"""

import typer


def info(message: str):
    """输出 [INFO] 状态行"""
    typer.secho("[INFO]", fg=typer.colors.CYAN, bold=True, nl=False)
    typer.echo(f" {message}")


def error(message: str):
    """输出 [ERROR] 状态行（stderr）"""
    typer.secho("[ERROR]", fg=typer.colors.RED, bold=True, nl=False, err=True)
    typer.echo(f" {message}", err=True)


def success(message: str):
    typer.secho("[SUCCESS]", fg=typer.colors.GREEN, bold=True, nl=False)
    typer.echo(f" {message}")


def fail(message: str):
    typer.secho("[FAIL]", fg=typer.colors.RED, bold=True, nl=False)
    typer.echo(f" {message}")
