import json
import logging

import click
import uvicorn
from httpx import HTTPError

import ocimeta.oci
from ocimeta.oci import AuthenticationError, Cancelled, Reference


@click.group()
@click.version_option(ocimeta.__version__, prog_name="ocimeta")
def cli():
    pass


class OCI:
    def __init__(
        self,
        username: str | None = None,
        password: str | None = None,
        plain_http: bool | None = None,
        debug: bool = False,
    ):
        if debug:
            logging.basicConfig(level=logging.DEBUG)
        self.username = username
        self.password = password
        self.plain_http = plain_http or None

    def client(self, registry: str) -> ocimeta.oci.Client:
        return ocimeta.oci.Client(
            registry_url=ocimeta.oci.registry_url(registry, plain_http=self.plain_http),
            username=self.username,
            password=self.password,
        )


def echo_json(data):
    click.echo(json.dumps(data, indent=2))


def run(func, *args, **kwargs):
    """Call `func`, turning library errors into CLI errors"""
    try:
        return func(*args, **kwargs)
    except (ValueError, AuthenticationError, HTTPError, Cancelled) as e:
        raise click.ClickException(str(e)) from e


@cli.group()
@click.option("-u", "--username", help="Username", default=None, envvar="OCIMETA_USERNAME")
@click.option("-p", "--password", help="Password", default=None, envvar="OCIMETA_PASSWORD")
@click.option(
    "--plain-http",
    help="Use plain HTTP instead of HTTPS, defaults to HTTP for localhost only",
    is_flag=True,
    default=None,
)
@click.option("-d", "--debug", help="Debug output", is_flag=True)
@click.pass_context
def oci(ctx, username, password, plain_http, debug):
    ctx.obj = OCI(
        username=username, password=password, plain_http=plain_http, debug=debug
    )


@oci.command()
def registries():
    """List well-known public registries with catalog support."""
    echo_json(ocimeta.oci.list_wellknown_registries())


@oci.command()
@click.argument("reference")
def parse(reference: str):
    """Parse a reference into registry, repository, tag and digest."""
    echo_json(run(ocimeta.oci.parse_reference, reference).as_dict())


@oci.command()
@click.argument("registry")
@click.pass_context
def repositories(ctx, registry: str):
    """List the repositories of a registry."""
    obj: OCI = ctx.ensure_object(OCI)
    with run(obj.client, registry) as client:
        for name in run(ocimeta.oci.list_repositories, client=client):
            click.echo(name)


@oci.command()
@click.argument("repository")
@click.pass_context
def tags(ctx, repository: str):
    """List the tags of REPOSITORY, given as <registry>/<repository>."""
    obj: OCI = ctx.ensure_object(OCI)
    reference = run(Reference.from_string, repository)
    with obj.client(reference.registry) as client:
        for tag in run(ocimeta.oci.list_tags, reference=reference, client=client):
            click.echo(tag)


@oci.command()
@click.argument("reference")
@click.pass_context
def manifest(ctx, reference: str):
    """Fetch the manifest at REFERENCE."""
    obj: OCI = ctx.ensure_object(OCI)
    ref = run(Reference.from_string, reference)
    with obj.client(ref.registry) as client:
        echo_json(run(ocimeta.oci.fetch_manifest, reference=ref, client=client))


@oci.command()
@click.argument("reference")
@click.pass_context
def blob(ctx, reference: str):
    """Fetch the JSON blob at REFERENCE, given as <registry>/<repository>@<digest>."""
    obj: OCI = ctx.ensure_object(OCI)
    ref = run(Reference.from_string, reference)
    with obj.client(ref.registry) as client:
        echo_json(run(ocimeta.oci.fetch_blob, reference=ref, client=client))


@oci.command()
@click.argument("reference")
@click.option("--artifact-type", help="Only list referrers of this type", default=None)
@click.pass_context
def referrers(ctx, reference: str, artifact_type: str | None):
    """List the referrers of REFERENCE as a tree."""
    obj: OCI = ctx.ensure_object(OCI)
    ref = run(Reference.from_string, reference)
    with obj.client(ref.registry) as client:
        tree = run(
            ocimeta.oci.list_referrers,
            reference=ref,
            client=client,
            artifact_type=artifact_type,
        )
        echo_json(tree)


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "()": "uvicorn.logging.DefaultFormatter",
            "fmt": "%(levelprefix)s %(message)s",
            "use_colors": None,
        },
        "access": {
            "()": "uvicorn.logging.AccessFormatter",
            "fmt": '%(levelprefix)s %(client_addr)s - "%(request_line)s" %(status_code)s',  # noqa: E501
        },
    },
    "handlers": {
        "default": {
            "formatter": "default",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
        "access": {
            "formatter": "access",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
        },
    },
    "loggers": {
        "uvicorn": {"handlers": ["default"], "level": "INFO", "propagate": False},
        "uvicorn.error": {"level": "INFO"},
        "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
        "ocimeta": {"handlers": ["default"], "level": "INFO", "propagate": False},
    },
}


@cli.command()
@click.option("--reload", help="Watch for changes", is_flag=True)
@click.option("--host", default="127.0.0.1")
@click.option("-p", "--port", type=int, default=8080)
def server(reload: bool = False, host: str = "127.0.0.1", port: int = 8080):
    """Serve the registry queries over HTTP."""
    uvicorn.run(
        "ocimeta.server:app",
        host=host,
        port=port,
        log_level="info",
        log_config=LOGGING_CONFIG,
        reload=reload,
    )


if __name__ == "__main__":
    cli()
