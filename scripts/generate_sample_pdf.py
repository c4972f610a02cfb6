#!/usr/bin/env python3
"""
Generate a synthetic German multi-page PDF for manual pipeline runs.

The pipeline's default source language is German, so the sample is a short
German operating manual: a cover page, running text, a table and a page
that is intentionally blank (exercises the empty-page translation path).

Usage:
    python scripts/generate_sample_pdf.py [--pages N] [--output PATH]

Output (default):
    data/samples/betriebsanleitung.pdf
"""

import argparse
from pathlib import Path

from fpdf import FPDF
from fpdf.enums import XPos, YPos

SECTIONS = [
    (
        "Sicherheitshinweise",
        "Lesen Sie diese Anleitung vollständig, bevor Sie das Gerät in Betrieb "
        "nehmen. Bewahren Sie die Anleitung für späteres Nachschlagen auf. "
        "Das Gerät darf nur in trockenen Innenräumen betrieben werden.",
    ),
    (
        "Lieferumfang",
        "Zum Lieferumfang gehören das Grundgerät, ein Netzteil, zwei "
        "Befestigungsschrauben und diese Betriebsanleitung. Prüfen Sie nach "
        "dem Auspacken, ob alle Teile vorhanden und unbeschädigt sind.",
    ),
    (
        "Inbetriebnahme",
        "Verbinden Sie das Netzteil mit dem Gerät und stecken Sie es in eine "
        "Steckdose. Die Statusleuchte blinkt grün, solange das Gerät startet, "
        "und leuchtet dauerhaft, sobald es betriebsbereit ist.",
    ),
    (
        "Wartung und Pflege",
        "Reinigen Sie das Gehäuse mit einem weichen, trockenen Tuch. Verwenden "
        "Sie keine Lösungsmittel. Lassen Sie Reparaturen ausschließlich von "
        "qualifiziertem Fachpersonal durchführen.",
    ),
    (
        "Entsorgung",
        "Elektrogeräte gehören nicht in den Hausmüll. Geben Sie das Gerät am "
        "Ende seiner Lebensdauer bei einer kommunalen Sammelstelle ab.",
    ),
]

TECHNICAL_DATA = [
    ("Betriebsspannung", "230 V ~ 50 Hz"),
    ("Leistungsaufnahme", "12 W"),
    ("Abmessungen", "180 x 120 x 45 mm"),
    ("Gewicht", "640 g"),
    ("Schutzart", "IP20"),
]


class SampleManual(FPDF):
    """PDF with a running header and page numbers."""

    def header(self):
        self.set_font("Helvetica", "B", 10)
        self.set_text_color(100, 100, 100)
        self.cell(0, 8, "Betriebsanleitung - Modell DP-200", align="C",
                  new_x=XPos.LMARGIN, new_y=YPos.NEXT)
        self.line(10, self.get_y(), 200, self.get_y())
        self.ln(4)

    def footer(self):
        self.set_y(-15)
        self.set_font("Helvetica", "I", 8)
        self.set_text_color(150, 150, 150)
        self.cell(0, 10, f"Seite {self.page_no()}/{{nb}}", align="C")

    def section_title(self, title: str):
        self.set_font("Helvetica", "B", 14)
        self.set_text_color(0, 0, 0)
        self.ln(4)
        self.cell(0, 10, title, new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    def body_text(self, text: str):
        self.set_font("Helvetica", "", 11)
        self.set_text_color(30, 30, 30)
        self.multi_cell(0, 6, text)
        self.ln(2)

    def table_row(self, cells: list[str], bold: bool = False):
        self.set_font("Helvetica", "B" if bold else "", 10)
        col_w = 190 / len(cells)
        for cell in cells:
            self.cell(col_w, 7, cell, border=1, align="C")
        self.ln()


def generate_manual(pages: int, output: Path) -> Path:
    pdf = SampleManual()
    pdf.alias_nb_pages()
    pdf.set_auto_page_break(auto=True, margin=20)

    # Cover
    pdf.add_page()
    pdf.ln(30)
    pdf.set_font("Helvetica", "B", 24)
    pdf.cell(0, 15, "Betriebsanleitung", align="C", new_x=XPos.LMARGIN, new_y=YPos.NEXT)
    pdf.set_font("Helvetica", "", 16)
    pdf.cell(0, 10, "Steuergerät DP-200", align="C", new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    # One section per page, cycling through the text
    for index in range(max(pages - 3, 1)):
        title, text = SECTIONS[index % len(SECTIONS)]
        pdf.add_page()
        pdf.section_title(f"{index + 1}. {title}")
        pdf.body_text(text)
        pdf.body_text(text)

    # Technical data table
    pdf.add_page()
    pdf.section_title("Technische Daten")
    pdf.table_row(["Merkmal", "Wert"], bold=True)
    for name, value in TECHNICAL_DATA:
        pdf.table_row([name, value])

    # Deliberately empty page (header/footer only)
    pdf.add_page()

    output.parent.mkdir(parents=True, exist_ok=True)
    pdf.output(str(output))
    return output


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--pages", type=int, default=6, help="approximate page count")
    parser.add_argument(
        "--output", type=Path, default=Path("data/samples/betriebsanleitung.pdf")
    )
    args = parser.parse_args()
    path = generate_manual(args.pages, args.output)
    print(f"Generated: {path}")


if __name__ == "__main__":
    main()
