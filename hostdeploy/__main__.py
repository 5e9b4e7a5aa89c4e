from .deploy import cli


cli()
