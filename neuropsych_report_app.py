"""
Neuropsych Report Planner
A Shiny for Python app that classifies a patient's test scores into report
domains and previews the planned domain sections.

Features:
- Upload a score table (CSV or Parquet)
- Classify scales with the neuropsych lookup table
- Resolve raters and age group per domain
- Show z-score group means and the sections the report will contain
- Export section data as a ZIP of CSVs
"""

import io
import logging
import zipfile
from datetime import datetime
from pathlib import Path

import pandas as pd
from shiny import App, Inputs, Outputs, Session, reactive, render, ui

from neuropsych_domains import load_domain_definitions
from neuropsych_records import DataLoadError, load_lookup_table, load_score_records
from report_assembly import AUDIT_FILENAME, ReportPlan, format_audit, plan_report, section_outputs, section_table

logger = logging.getLogger(__name__)

AGE_GROUP_CHOICES = {"auto": "Auto-detect", "child": "Child", "adult": "Adult"}


def read_upload(file_info: dict) -> pd.DataFrame:
    """Read an uploaded file, using the original file name for the format."""
    path = file_info["datapath"]
    if Path(file_info.get("name", path)).suffix.lower() in (".parquet", ".pq"):
        return pd.read_parquet(path)
    return pd.read_csv(path, encoding="utf-8-sig")


def build_sections_zip(plan: ReportPlan) -> bytes:
    """ZIP holding the same files write_section_data puts on disk."""
    zip_buffer = io.BytesIO()
    with zipfile.ZipFile(zip_buffer, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, frame in section_outputs(plan):
            zf.writestr(name, frame.to_csv(index=False))
        zf.writestr(AUDIT_FILENAME, format_audit(plan))
    return zip_buffer.getvalue()


# =============================================================================
# Shiny UI
# =============================================================================

app_ui = ui.page_sidebar(
    ui.sidebar(
        ui.h4("Data Input"),
        ui.input_file("score_file", "Upload Score File", accept=[".csv", ".parquet"], multiple=False),
        ui.hr(),
        ui.input_file("lookup_file", "Upload Lookup Table (Optional)", accept=[".csv"], multiple=False),
        ui.p("Rows without a domain are matched by scale name if not provided", class_="text-muted small"),
        ui.hr(),
        ui.h4("Options"),
        ui.input_radio_buttons("age_group", "Age group", choices=AGE_GROUP_CHOICES, selected="auto"),
        ui.hr(),
        ui.download_button("download_sections", "Download Section Data", class_="btn-primary w-100"),
        width=300,
    ),
    ui.navset_card_tab(
        ui.nav_panel("Sections", ui.output_data_frame("sections_table")),
        ui.nav_panel(
            "Domain Data",
            ui.output_ui("section_selector"),
            ui.output_data_frame("section_data"),
            ui.output_data_frame("section_groups"),
        ),
        ui.nav_panel("Audit", ui.output_text_verbatim("audit_text")),
    ),
    title="Neuropsych Report Planner",
    fillable=True,
)


# =============================================================================
# Shiny Server
# =============================================================================


def server(input: Inputs, output: Outputs, session: Session):
    @reactive.Calc
    def lookup_table():
        lookup_file = input.lookup_file()
        if not lookup_file:
            return pd.DataFrame()
        return load_lookup_table(read_upload(lookup_file[0]))

    @reactive.Calc
    def report():
        """(plan, error message) for the current upload and options."""
        file_info = input.score_file()
        if not file_info:
            return None, None

        age_group = input.age_group()
        try:
            table, load_audit = load_score_records(read_upload(file_info[0]), lookup_table())
        except DataLoadError as e:
            logger.warning("Upload rejected: %s", e)
            return None, str(e)

        plan = plan_report(
            table,
            load_domain_definitions(),
            age_group=None if age_group == "auto" else age_group,
            load_audit=load_audit,
        )
        return plan, None

    def sections_by_id() -> dict:
        plan, _ = report()
        if plan is None:
            return {}
        return {s.file_id: s for s in plan.sections}

    @output
    @render.data_frame
    def sections_table():
        plan, _ = report()
        if plan is None:
            return pd.DataFrame()
        return render.DataTable(plan.manifest(), height="500px")

    @output
    @render.ui
    def section_selector():
        plan, error = report()
        if error:
            return ui.p(error, class_="text-danger")
        sections = sections_by_id()
        if not sections:
            return ui.p("Upload a score file to begin", class_="text-muted")

        choices = {file_id: f"{s.sequence_number}. {s.definition.name}" for file_id, s in sections.items()}
        return ui.input_select("selected_section", "Select Domain:", choices=choices)

    @output
    @render.data_frame
    def section_data():
        section = sections_by_id().get(input.selected_section() if "selected_section" in input else None)
        if section is None:
            return pd.DataFrame()
        return render.DataTable(section_table(section), filters=True, height="400px")

    @output
    @render.data_frame
    def section_groups():
        section = sections_by_id().get(input.selected_section() if "selected_section" in input else None)
        if section is None:
            return pd.DataFrame()
        return section.aggregate.groups_frame().round({"z_mean": 2, "z_sd": 2})

    @output
    @render.text
    def audit_text():
        plan, error = report()
        if error:
            return f"Could not load scores: {error}"
        if plan is None:
            return "No file uploaded"
        return "\n".join(plan.audit.summary_lines())

    @render.download(filename=lambda: f"neuropsych_sections_{datetime.now().strftime('%Y%m%d_%H%M%S')}.zip")
    def download_sections():
        plan, _ = report()
        if plan is None:
            return
        yield build_sections_zip(plan)


# =============================================================================
# Create App
# =============================================================================

app = App(app_ui, server)
