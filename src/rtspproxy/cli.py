import click
import sys


from loguru import logger


from rtspproxy.server import Server, DEFAULT_VALUES
from rtspproxy.rtspclient import DEFAULT_PORT, DEFAULT_TIMEOUT


LOG_FORMAT = "<e>{file}</e> | <r>{line}</r> | <g>{time:DD/MM/YY HH:mm:ss:SSS}</> | <lvl>{level}</> | <c>{message}</>"


def configure_logging(debug, debug_level, debug_file, debug_filename):
    """
    Point loguru at stderr and, optionally, a log file.

    Without --debug only errors reach stderr. With --debug the chosen
    level goes to stderr, and also to the log file when --debug-file is
    given.
    """
    logger.remove()
    if not debug:
        logger.add(sys.stderr, level="ERROR", format=LOG_FORMAT, colorize=True)
        return
    logger.add(sys.stderr, level=debug_level, format=LOG_FORMAT, colorize=True)
    if debug_file:
        logger.add(debug_filename, level=debug_level, format=LOG_FORMAT, colorize=False)


def parse_extra_options(ctx, param, values):
    """Turn repeated KEY=VALUE options into a dict."""
    options = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}")
        options[key.strip().replace("-", "_")] = value
    return options


@click.group()
@click.version_option(package_name="rtsp-proxy")
@click.option('--debug/--no-debug', default=False, show_default=True)
@click.option('--debug-level', default='INFO', show_default=True,
              type=click.Choice(['TRACE', 'DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.option('--debug-file/--no-debug-file', default=False, show_default=True)
@click.option('--debug-filename', type=click.Path(), show_default=True, default="rtspproxy.log")
@click.pass_context
def cli(ctx, debug, debug_level, debug_file, debug_filename):
    """
    Simple RTSP proxy server.

    Clients connect to the proxy and send their RTSP commands; the proxy
    passes them to a single upstream RTSP source and returns the results.
    """
    ctx.ensure_object(dict)
    ctx.obj['DEBUG'] = debug
    ctx.obj['DEBUG_LEVEL'] = debug_level.upper()
    ctx.obj['DEBUG_FILE'] = debug_file
    configure_logging(debug, debug_level.upper(), debug_file, debug_filename)

    logger.debug(f"Debug mode is {'on' if debug else 'off'}")
    logger.debug(f"Debug level is {debug_level}")
    logger.debug(f"Debug file is {debug_file}")


@cli.command(name="server")
@click.pass_context
@click.option(
    "-p",
    "--port",
    help="Proxy RTSP port (TCP)",
    default=DEFAULT_VALUES["port"],
    show_default=True,
    type=int
)
@click.option(
    "-h",
    "--host",
    help="IP Address to listen on",
    default=DEFAULT_VALUES["host"],
    show_default=True
)
@click.option(
    "--listen",
    help="Listen backlog",
    default=DEFAULT_VALUES["listen"],
    show_default=True,
    type=int
)
@click.option(
    "-a",
    "--address",
    help="IP Address of the upstream RTSP source",
    required=True
)
@click.option(
    "--upstream-port",
    help="RTSP port of the upstream source",
    default=DEFAULT_PORT,
    show_default=True,
    type=int
)
@click.option(
    "-m",
    "--media-path",
    help="Media path on the upstream source, e.g. /mpeg4/media.amp",
    default=None
)
@click.option(
    "--client-port-range",
    help="RTP/RTCP client ports sent in SETUP, e.g. 6970-6971",
    default=None
)
@click.option(
    "--transport-protocol",
    help="Transport sent in SETUP",
    default="RTP/AVP;unicast",
    show_default=True
)
@click.option(
    "--timeout",
    help="Upstream socket timeout (seconds)",
    default=DEFAULT_TIMEOUT,
    show_default=True,
    type=float
)
@click.option(
    "-o",
    "--option",
    "extra",
    help="Extra upstream client option KEY=VALUE (repeatable)",
    multiple=True,
    callback=parse_extra_options
)
def server(ctx, port, host, listen, address, upstream_port, media_path,
           client_port_range, transport_protocol, timeout, extra):
    """
    Start the RTSP proxy.

    \b
    The proxy listens on the given port (default is 554) and relays every
    connection to the upstream source given with --address.
    """
    client_config = dict(extra)
    client_config.update({
        "address": address,
        "port": upstream_port,
        "media_path": media_path,
        "client_port_range": client_port_range,
        "transport_protocol": transport_protocol,
        "timeout": timeout,
    })
    client_config = {k: v for k, v in client_config.items() if v is not None}
    ctx.obj['CLIENT_CONFIG'] = client_config

    logger.info(f"RTSP proxy to {address}:{upstream_port}")
    proxy = Server(port, host, client_config, listen=listen)
    try:
        proxy.run()
    except OSError as e:
        logger.error(f"Failed to start server: {e}")
        raise click.ClickException(str(e))


if __name__ == "__main__":
    cli()
