#!/usr/bin/env python3
"""
HTML Content Module

HTML helpers built on BeautifulSoup and html2text: a strict <img> source scanner that
tokenizes tags instead of searching raw text, and a renderer that turns an HTML body
into readable text for console previews.
"""

import re
from typing import List

import html2text
from bs4 import BeautifulSoup


def extract_image_sources_strict(html: str) -> List[str]:
    """
    Collect the src of every <img> tag using an HTML parser.

    Unlike the forward-only scan, this accepts single-quoted and unquoted src values
    and keeps going past <img> tags that have no src.

    Args:
        html: Raw HTML text

    Returns:
        list: Non-empty src values in document order, duplicates included
    """
    if not html:
        return []

    soup = BeautifulSoup(html, "html.parser")
    sources = []
    for img in soup.find_all("img"):
        src = img.get("src")
        if src and src.strip():
            sources.append(src.strip())
    return sources


class HTMLRenderer:
    """Renders HTML bodies as plain text for display"""

    def __init__(self):
        # Configure html2text converter
        self.html_converter = html2text.HTML2Text()
        self.html_converter.ignore_links = False
        self.html_converter.ignore_images = False
        self.html_converter.ignore_emphasis = True
        self.html_converter.body_width = 0  # Don't wrap lines
        self.html_converter.unicode_snob = True

    def render(self, html_content: str) -> str:
        """
        Convert HTML content to plain text using BeautifulSoup and html2text.

        Args:
            html_content: HTML content to convert

        Returns:
            str: Plain text content
        """
        if not html_content or not html_content.strip():
            return ""

        try:
            soup = BeautifulSoup(html_content, "html.parser")

            # Remove script and style elements
            for script in soup(["script", "style"]):
                script.decompose()

            return self.html_converter.handle(str(soup)).strip()

        except Exception as e:
            print(f"Warning: Error converting HTML to text: {str(e)}")
            # Fallback: basic HTML tag removal
            return re.sub(r"<[^>]+>", "", html_content)
