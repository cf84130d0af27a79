"""Export artifacts built from already-fetched session data.

Everything here is pure: no store access and no network. ReportLab's
platypus flowables paginate the PDF; the deck continues overflowing slide
content on extra slides so nothing is dropped.
"""

from __future__ import annotations

import csv
import io
from typing import Iterable, List, Optional, Sequence, Tuple
from xml.sax.saxutils import escape

from pptx import Presentation
from pptx.util import Inches, Pt
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import (
    ListFlowable,
    ListItem,
    Paragraph,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

from ideatank.schemas.details import IdeaDetails, Slide
from ideatank.schemas.session import AIAnalysisResult, Idea, SessionDocument

REPORT_TITLE = "Idea Tank - Plan"
MAX_BULLETS_PER_SLIDE = 6
MAX_CHARS_PER_SLIDE = 600
PBI_CSV_HEADERS = ("Title", "Story Points", "Description")


def _styles():
    styles = getSampleStyleSheet()
    styles.add(
        ParagraphStyle("Muted", parent=styles["BodyText"], textColor=colors.grey, fontSize=9)
    )
    styles.add(ParagraphStyle("Answer", parent=styles["BodyText"], fontName="Helvetica-Oblique"))
    return styles


def _para(text: Optional[str], style) -> Paragraph:
    return Paragraph(escape(text or "").replace("\n", "<br/>"), style)


def _bullets(items: Iterable[str], style, numbered: bool = False) -> ListFlowable:
    return ListFlowable(
        [ListItem(_para(item, style)) for item in items],
        bulletType="1" if numbered else "bullet",
        leftIndent=12,
    )


def _labelled(label: str, text: str, styles) -> List:
    return [_para(label, styles["Heading4"]), _para(text, styles["BodyText"])]


def build_report(
    session: SessionDocument,
    ideas: Sequence[Idea],
    idea: Idea,
    details: IdeaDetails,
    analysis: Optional[AIAnalysisResult] = None,
) -> bytes:
    """Render the idea plan as a PDF document."""
    styles = _styles()
    body = styles["BodyText"]
    story: List = [
        _para(REPORT_TITLE, styles["Title"]),
        _para(f"Context: {session.context}", styles["Muted"]),
        Spacer(1, 6 * mm),
        _para(f"Idee: {idea.name}", styles["Heading2"]),
        _para(idea.content, body),
    ]

    if analysis is not None:
        story += [
            _para("Sessie-analyse", styles["Heading3"]),
            _para(analysis.headline, styles["Heading4"]),
            _para(analysis.summary, body),
            _para(f"Innovatiescore: {analysis.innovation_score}/100", body),
        ]
        if analysis.keywords:
            story.append(_para("Trefwoorden: " + ", ".join(analysis.keywords), styles["Muted"]))

    story += [_para("Waarom dit een goed idee is", styles["Heading3"]), _para(details.rationale, body)]
    story += [_para("Implementatie Stappen", styles["Heading3"]), _bullets(details.steps, body, numbered=True)]

    case = details.business_case
    story.append(_para("Business Case", styles["Heading3"]))
    story += _labelled("Probleem", case.problem_statement, styles)
    story += _labelled("Oplossing", case.proposed_solution, styles)
    story += _labelled("Strategische fit", case.strategic_fit, styles)
    story += _labelled("Financiële impact", case.financial_impact, styles)
    if case.risks:
        story += [_para("Risico's", styles["Heading4"]), _bullets(case.risks, body)]

    critic = details.devils_advocate
    story.append(_para("Devil's Advocate", styles["Heading3"]))
    story += _labelled("Kritiek", critic.critique, styles)
    if critic.blind_spots:
        story += [_para("Blinde vlekken", styles["Heading4"]), _bullets(critic.blind_spots, body)]
    story += _labelled("Pre-mortem", critic.pre_mortem, styles)

    marketing = details.marketing
    story.append(_para("Marketing & Pitch", styles["Heading3"]))
    story += _labelled("Slogan", marketing.slogan, styles)
    story += _labelled("Doelgroep", marketing.target_audience, styles)
    story += _labelled("LinkedIn", marketing.linked_in_post, styles)
    story += _labelled("Tweet", marketing.viral_tweet, styles)

    if details.questions:
        story.append(_para("Vraag & Antwoord", styles["Heading3"]))
        for index, question in enumerate(details.questions):
            story.append(_para(f"V: {question}", styles["Heading4"]))
            if index < len(details.question_answers):
                story.append(_para(f"A: {details.question_answers[index]}", styles["Answer"]))

    story.append(_para("Product Backlog", styles["Heading3"]))
    rows = [["Titel", "Prioriteit", "Punten", "User story"]]
    for pbi in details.pbis:
        rows.append(
            [
                _para(pbi.title, body),
                _para(pbi.priority, body),
                str(pbi.story_points),
                _para(pbi.user_story or pbi.description, body),
            ]
        )
    table = Table(rows, colWidths=[45 * mm, 25 * mm, 15 * mm, 85 * mm], repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#E1001A")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]
        )
    )
    story.append(table)

    for extra, heading in ((details.blog_post, "Blogpost"), (details.press_release, "Persbericht")):
        if extra is not None:
            story += [_para(heading, styles["Heading3"]), _para(extra.title, styles["Heading4"]), _para(extra.content, body)]

    if ideas:
        story.append(_para("Alle ingediende ideeën", styles["Heading3"]))
        story.append(_bullets([f"{item.name}: {item.content}" for item in ideas], body))

    buffer = io.BytesIO()
    document = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        title=f"{REPORT_TITLE}: {idea.name}",
        leftMargin=18 * mm,
        rightMargin=18 * mm,
        topMargin=18 * mm,
        bottomMargin=18 * mm,
    )
    document.build(story)
    return buffer.getvalue()


def default_outline(details: IdeaDetails, idea: Idea) -> List[Slide]:
    """Slides derived from the elaboration when no outline was generated."""
    case = details.business_case
    return [
        Slide(title="Het probleem", content=[case.problem_statement]),
        Slide(title="Onze oplossing", content=[idea.content, case.proposed_solution]),
        Slide(title="Waarom nu", content=[details.rationale, case.strategic_fit]),
        Slide(title="Impact", content=[case.financial_impact] + list(case.risks)),
        Slide(title="Aanpak", content=list(details.steps)),
        Slide(title="Backlog", content=[f"{pbi.title} ({pbi.story_points} pt)" for pbi in details.pbis]),
    ]


def paginate_slide(slide: Slide) -> List[Tuple[str, List[str]]]:
    """Split a slide into pages that fit the bullet and character limits."""
    pages: List[Tuple[str, List[str]]] = []
    current: List[str] = []
    size = 0
    for bullet in slide.content:
        if current and (len(current) >= MAX_BULLETS_PER_SLIDE or size + len(bullet) > MAX_CHARS_PER_SLIDE):
            pages.append(current)
            current, size = [], 0
        current.append(bullet)
        size += len(bullet)
    pages.append(current)
    titles = [slide.title] + [f"{slide.title} (vervolg)"] * (len(pages) - 1)
    return list(zip(titles, pages))


def build_deck(details: IdeaDetails, idea: Idea) -> bytes:
    """Render the pitch deck as a .pptx file."""
    presentation = Presentation()
    presentation.slide_width = Inches(13.333)
    presentation.slide_height = Inches(7.5)

    title_slide = presentation.slides.add_slide(presentation.slide_layouts[0])
    title_slide.shapes.title.text = idea.name
    title_slide.placeholders[1].text = details.marketing.slogan

    slides = details.ppt_outline.slides if details.ppt_outline else default_outline(details, idea)
    layout = presentation.slide_layouts[1]
    for slide in slides:
        for title, bullets in paginate_slide(slide):
            page = presentation.slides.add_slide(layout)
            page.shapes.title.text = title
            body = page.placeholders[1].text_frame
            body.clear()
            for index, bullet in enumerate(bullets):
                paragraph = body.paragraphs[0] if index == 0 else body.add_paragraph()
                paragraph.text = bullet
                paragraph.font.size = Pt(20)

    buffer = io.BytesIO()
    presentation.save(buffer)
    return buffer.getvalue()


def build_pbi_csv(details: IdeaDetails) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(PBI_CSV_HEADERS)
    for pbi in details.pbis:
        description = pbi.description or pbi.user_story
        if pbi.acceptance_criteria:
            description = f"{description}\n" + "\n".join(f"- {item}" for item in pbi.acceptance_criteria)
        writer.writerow([pbi.title, pbi.story_points, description.strip()])
    return buffer.getvalue()
