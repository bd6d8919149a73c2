"""
JUnit XML rendering: one testsuite per run, one testcase per stage.
"""

import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

from runner.src.models.outcome import Outcome
from runner.src.models.stage import Run


def render_junit_suite(
    suite_name: str,
    classname: str,
    stages: List[Dict[str, Any]],
    properties: Optional[Dict[str, str]] = None,
    timestamp: Optional[str] = None,
) -> str:
    """
    Render stage records as a JUnit testsuite.

    Each record needs `name` and `outcome`; `duration_seconds`, `output`,
    `error` and `skip_reason` are optional.
    """
    outcomes = [Outcome(s["outcome"]) for s in stages]
    total_time = sum(s.get("duration_seconds") or 0.0 for s in stages)

    attrs = {
        "name": suite_name,
        "tests": str(len(stages)),
        "failures": str(sum(1 for o in outcomes if o in (Outcome.FAILURE, Outcome.UNSTABLE))),
        "errors": str(outcomes.count(Outcome.ABORTED)),
        "skipped": str(outcomes.count(Outcome.SKIPPED)),
        "time": f"{total_time:.3f}",
    }
    if timestamp:
        attrs["timestamp"] = timestamp
    suite = ET.Element("testsuite", attrs)

    if properties:
        props = ET.SubElement(suite, "properties")
        for name, value in properties.items():
            ET.SubElement(props, "property", {"name": name, "value": str(value)})

    for stage, outcome in zip(stages, outcomes):
        case = ET.SubElement(suite, "testcase", {
            "classname": classname,
            "name": stage["name"],
            "time": f"{stage.get('duration_seconds') or 0.0:.3f}",
        })

        output = stage.get("output") or ""
        message = stage.get("error") or outcome.value
        if outcome == Outcome.FAILURE:
            ET.SubElement(case, "failure", {"message": message, "type": "failure"}).text = output
        elif outcome == Outcome.UNSTABLE:
            ET.SubElement(case, "failure", {"message": message, "type": "unstable"}).text = output
        elif outcome == Outcome.ABORTED:
            ET.SubElement(case, "error", {"message": message, "type": "aborted"}).text = output
        elif outcome == Outcome.SKIPPED:
            ET.SubElement(case, "skipped", {"message": stage.get("skip_reason") or "skipped"})
        elif output:
            ET.SubElement(case, "system-out").text = output

    ET.indent(suite)
    return ET.tostring(suite, encoding="utf-8", xml_declaration=True).decode("utf-8")


def render_junit(run: Run) -> str:
    return render_junit_suite(
        suite_name=run.pipeline_name,
        classname=f"{run.pipeline_name}.{run.build_number}",
        stages=[stage.model_dump() for stage in run.stages],
        properties={
            "run_id": run.run_id,
            "build_number": str(run.build_number),
            "outcome": run.outcome.value if run.outcome else "",
        },
        timestamp=(run.started_at or run.created_at).isoformat(),
    )
