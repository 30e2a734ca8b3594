from dataclasses import dataclass
from typing import NoReturn

import typer

from kubetrace.config import TraceDefaults
from kubetrace.errors import TraceCancelledError, TraceError
from kubetrace.kubernetes import load_clients, parse_target
from kubetrace.operations import TraceManager, read_program
from kubetrace.signals import with_standard_signals
from kubetrace.types import TraceFilter, TraceRequest
from kubetrace.ui import (
    print_attach_banner,
    print_info,
    print_step,
    print_success,
    print_trace_created,
    print_warning,
    render_traces_table,
)

app = typer.Typer(help="Run bpftrace programs on Kubernetes nodes and pods.")


@dataclass
class ConnectionOptions:
    kubeconfig: str | None = None
    context: str | None = None


def build_manager(kubeconfig: str | None, context: str | None) -> tuple[TraceManager, str]:
    """Connect to the cluster. Returns the manager and the current namespace."""
    clients = load_clients(kubeconfig=kubeconfig, context=context)
    defaults = TraceDefaults.from_env()
    return TraceManager(clients.core_v1, clients.batch_v1, defaults), clients.namespace


def _fail(message: str) -> NoReturn:
    typer.echo(f"❌ {message}", err=True)
    raise typer.Exit(code=1)


def _connect(ctx: typer.Context, namespace: str | None) -> tuple[TraceManager, str]:
    options: ConnectionOptions = ctx.obj or ConnectionOptions()
    try:
        manager, current_namespace = build_manager(options.kubeconfig, options.context)
    except TraceError as e:
        _fail(str(e))
    return manager, namespace or current_namespace


def _attach(
    manager: TraceManager, trace_id: str, namespace: str, delete_on_interrupt: bool
) -> None:
    print_attach_banner(trace_id, delete_on_interrupt)
    with with_standard_signals() as cancel:
        try:
            manager.attach(
                trace_id, namespace, cancel, delete_on_cancel=delete_on_interrupt
            )
        except TraceCancelledError:
            if delete_on_interrupt:
                print_success(f"Detached and deleted trace {trace_id}")
            else:
                print_info(
                    f"Detached from trace {trace_id}; it keeps running until its deadline"
                )
            return
        except KeyboardInterrupt:
            print_warning(
                f"Interrupted again; trace {trace_id} may still exist. "
                f"Check with: kubetrace get {trace_id} -n {namespace}"
            )
            raise typer.Exit(code=130)
        except TraceError as e:
            typer.echo(f"❌ {e}", err=True)
            print_info(
                f"Trace {trace_id} was not touched; attach again with: "
                f"kubetrace attach {trace_id} -n {namespace}"
            )
            raise typer.Exit(code=1)
    print_success(f"Trace {trace_id} finished")


@app.callback()
def main(
    ctx: typer.Context,
    kubeconfig: str = typer.Option(
        None, "--kubeconfig", help="Path to the kubeconfig file to use."
    ),
    context: str = typer.Option(
        None, "--context", help="The kubeconfig context to use."
    ),
):
    ctx.obj = ConnectionOptions(kubeconfig=kubeconfig, context=context)


@app.command(help="Run a trace program on a node or on the node backing a pod.")
def run(
    ctx: typer.Context,
    resource: str = typer.Argument(
        ..., help="The target: node/NAME, pod/NAME or a bare node name."
    ),
    program_args: list[str] = typer.Argument(
        None, help="Arguments for a toolkit program, given after --."
    ),
    eval_program: str = typer.Option(
        None, "--eval", "-e", help="Literal string to be evaluated as a bpftrace program."
    ),
    filename: str = typer.Option(
        None, "--filename", "-f", help="File containing a bpftrace program."
    ),
    toolkit: str = typer.Option(
        None, "--toolkit", "-b", help="Name of a tool that ships with the BCC toolkit, e.g. 'execsnoop'."
    ),
    container: str = typer.Option(
        None, "--container", "-c", help="The container of a pod target. Defaults to the first one."
    ),
    namespace: str = typer.Option(
        None, "--namespace", "-n", help="The namespace to use. Defaults to the current context's."
    ),
    attach: bool = typer.Option(
        False, "--attach", "-a", help="Attach to the trace program once it is created."
    ),
    service_account: str = typer.Option(
        None, "--serviceaccount", help="Service account of the trace job's pod."
    ),
    image: str = typer.Option(None, "--imagename", help="Custom image for the tracer."),
    init_image: str = typer.Option(
        None,
        "--init-imagename",
        help="Custom image for the init container that fetches linux headers.",
    ),
    fetch_headers: bool = typer.Option(
        False, "--fetch-headers", help="Fetch and prepare linux headers before tracing."
    ),
    deadline: int = typer.Option(
        None, "--deadline", help="Maximum time to allow the trace to run, in seconds."
    ),
    deadline_grace_period: int = typer.Option(
        None,
        "--deadline-grace-period",
        help="Time to wait after the deadline for maps or histograms to print, in seconds.",
    ),
    delete_on_interrupt: bool = typer.Option(
        False,
        "--delete-on-interrupt",
        help="With --attach, delete the trace instead of detaching on Ctrl+C.",
    ),
):
    manager, namespace = _connect(ctx, namespace)
    try:
        program, kind = read_program(eval_program, filename, toolkit)
        request = TraceRequest(
            target=parse_target(resource, container),
            program=program,
            program_kind=kind,
            program_args=tuple(program_args or ()),
            fetch_headers=fetch_headers,
            image=image,
            init_image=init_image,
            service_account=service_account,
            deadline=deadline,
            deadline_grace_period=deadline_grace_period,
        )
        print_step(f"Creating trace on [blue]{resource}[/blue]...")
        trace_id = manager.submit(request, namespace)
    except TraceError as e:
        _fail(str(e))

    print_trace_created(trace_id, namespace)
    if attach:
        _attach(manager, trace_id, namespace, delete_on_interrupt)


@app.command(help="Attach to the output of a running trace.")
def attach(
    ctx: typer.Context,
    trace_id: str = typer.Argument(..., help="The trace ID."),
    namespace: str = typer.Option(None, "--namespace", "-n", help="The namespace to use."),
    delete_on_interrupt: bool = typer.Option(
        False, "--delete-on-interrupt", help="Delete the trace instead of detaching on Ctrl+C."
    ),
):
    manager, namespace = _connect(ctx, namespace)
    _attach(manager, trace_id, namespace, delete_on_interrupt)


@app.command(help="List traces in the specified namespace.")
def get(
    ctx: typer.Context,
    trace_id: str = typer.Argument(None, help="Only show this trace."),
    namespace: str = typer.Option(None, "--namespace", "-n", help="The namespace to use."),
    node: str = typer.Option(None, "--node", help="Only show traces running on this node."),
):
    manager, namespace = _connect(ctx, namespace)
    try:
        traces = manager.list_traces(namespace, TraceFilter(trace_id=trace_id, node=node))
    except TraceError as e:
        _fail(str(e))

    if not traces:
        print_info(f"No traces found in namespace '{namespace}'.")
        return
    render_traces_table(traces)


@app.command(help="Delete a trace, or every trace in the namespace with --all.")
def delete(
    ctx: typer.Context,
    trace_id: str = typer.Argument(None, help="The trace ID."),
    namespace: str = typer.Option(None, "--namespace", "-n", help="The namespace to use."),
    all_traces: bool = typer.Option(False, "--all", help="Delete all traces in the namespace."),
):
    if bool(trace_id) == all_traces:
        _fail("Specify either a trace ID or --all")

    manager, namespace = _connect(ctx, namespace)
    try:
        if all_traces:
            deleted = manager.delete_all(namespace)
        else:
            manager.delete(trace_id, namespace)
            deleted = [trace_id]
    except TraceError as e:
        _fail(str(e))

    if not deleted:
        print_info(f"No traces found in namespace '{namespace}'.")
    for deleted_id in deleted:
        print_success(f"trace {deleted_id} deleted")


@app.command(help="Print the output a trace has produced so far.")
def logs(
    ctx: typer.Context,
    trace_id: str = typer.Argument(..., help="The trace ID."),
    namespace: str = typer.Option(None, "--namespace", "-n", help="The namespace to use."),
):
    manager, namespace = _connect(ctx, namespace)
    try:
        manager.logs(trace_id, namespace)
    except TraceError as e:
        _fail(str(e))


if __name__ == "__main__":
    app()
