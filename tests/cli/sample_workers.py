"""Workers loaded by import path in the CLI tests (``sample_workers:WORKERS``)."""

from jobspine.scheduling import FunctionWorker


def _generate_report(job, params):
    return {"rows": params.get("rows", 0)}


def _post_interest(job, params):
    raise RuntimeError("ledger unavailable")


WORKERS = [
    FunctionWorker("report", _generate_report),
    FunctionWorker("interest", _post_interest),
]

report_worker = WORKERS[0]
