"""
Render an episode (title, text and scene illustrations) into a PDF.
"""
import logging
from dataclasses import dataclass
from io import BytesIO
from typing import List, Sequence
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image, PageBreak, Paragraph, SimpleDocTemplate, Spacer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageLayoutConfig:
    title_color: colors.Color
    text_color: colors.Color
    caption_color: colors.Color


DEFAULT_LAYOUT = PageLayoutConfig(
    title_color=colors.HexColor("#1F1B2E"),
    text_color=colors.HexColor("#2F2A40"),
    caption_color=colors.HexColor("#4B506D"),
)


class EpisodePDFBuilder:
    def __init__(self, page_size=A4, margin_mm: float = 18.0, layout: PageLayoutConfig = DEFAULT_LAYOUT):
        self.page_size = page_size
        self.margin = margin_mm * mm
        self.layout = layout

        self.story_title_style = ParagraphStyle(
            name="StoryTitle",
            fontName="Helvetica",
            fontSize=14,
            leading=18,
            alignment=TA_CENTER,
            textColor=self.layout.caption_color,
            spaceAfter=6,
        )
        self.title_style = ParagraphStyle(
            name="EpisodeTitle",
            fontName="Helvetica-Bold",
            fontSize=24,
            leading=30,
            alignment=TA_CENTER,
            textColor=self.layout.title_color,
            spaceAfter=18,
        )
        self.body_style = ParagraphStyle(
            name="Body",
            fontName="Helvetica",
            fontSize=12,
            leading=17,
            alignment=TA_JUSTIFY,
            textColor=self.layout.text_color,
            spaceAfter=10,
        )
        self.caption_style = ParagraphStyle(
            name="ImageCaption",
            fontName="Helvetica-Oblique",
            fontSize=10,
            leading=12,
            alignment=TA_CENTER,
            textColor=self.layout.caption_color,
        )

    def _image_flowable(self, data: bytes) -> Image:
        width, height = self.page_size
        max_w = width - 2 * self.margin
        max_h = height - 2 * self.margin - 40
        img_w, img_h = ImageReader(BytesIO(data)).getSize()
        scale = min(max_w / img_w, max_h / img_h)
        return Image(BytesIO(data), width=img_w * scale, height=img_h * scale)

    def build(self, story_title: str, episode_title: str, content: str, images: Sequence[bytes]) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=self.page_size,
            leftMargin=self.margin,
            rightMargin=self.margin,
            topMargin=self.margin,
            bottomMargin=self.margin,
            title=episode_title,
        )

        flowables: List = [
            Paragraph(escape(story_title), self.story_title_style),
            Paragraph(escape(episode_title), self.title_style),
        ]
        for block in filter(None, (p.strip() for p in content.split("\n\n"))):
            if block.strip("-* ") == "":
                flowables.append(Spacer(1, 12))
                continue
            flowables.append(Paragraph(escape(block).replace("\n", "<br/>"), self.body_style))

        for i, data in enumerate(images, start=1):
            flowables.append(PageBreak())
            flowables.append(self._image_flowable(data))
            flowables.append(Spacer(1, 8))
            flowables.append(Paragraph(f"Scene {i}", self.caption_style))

        doc.build(flowables)
        pdf = buffer.getvalue()
        logger.info(f"Rendered PDF for '{episode_title}' with {len(images)} image(s), {len(pdf)} bytes")
        return pdf
