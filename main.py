from shelfsync.cli import app


def main() -> None:
    app(prog_name="shelfsync")


if __name__ == "__main__":
    main()
