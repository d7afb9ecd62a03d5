"""
kube-forward 主程序入口

使用方式:
    python -m kube_forward forward
    或
    kube-forward forward --status-port 9109
"""

from kube_forward.cli import app


def main():
    """主程序入口"""
    app(prog_name="kube-forward")


if __name__ == "__main__":
    main()
