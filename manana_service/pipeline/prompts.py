"""Instruction text sent to the image model for each mode."""

from __future__ import annotations

import io
from math import gcd

from PIL import Image


def image_dimensions(data: bytes) -> tuple[int, int]:
    with Image.open(io.BytesIO(data)) as img:
        return img.size


def format_aspect_ratio(width: int, height: int) -> str:
    """e.g. ``800x1200 pixels (aspect ratio 2:3)``."""
    d = gcd(width, height) or 1
    return f"{width}x{height} pixels (aspect ratio {width // d}:{height // d})"


def aspect_ratio_for(data: bytes) -> str:
    width, height = image_dimensions(data)
    return format_aspect_ratio(width, height)


def _ref_phrase(ref_count: int) -> str:
    if ref_count > 0:
        return f"the {ref_count} reference image(s) attached above"
    return "no reference images"


def colorize_prompt(ref_count: int) -> str:
    return (
        f"Colorize the manga page below. Refer to {_ref_phrase(ref_count)} to maintain consistency "
        "in character eye color, skin color, hair color, and clothing color. Maintain consistency for "
        "the same character, but if the character is wearing new clothing in the image below, draw them "
        "with appropriate different clothing. Color different characters with distinct colors, but the "
        "same character must be colored consistently. Preserve speech balloons, onomatopoeia, "
        "backgrounds, grids, and all structural elements. Do not modify or delete any text - keep all "
        "text exactly as is. Do not change character expressions or gestures - only apply colors. Color "
        "each panel's scene exactly as shown - do not add different scenes, modify scenes, or remove "
        "scenes. Colorize the following image:"
    )


def translate_prompt(
    from_language: str, to_language: str, aspect_ratio: str, display_both: bool
) -> str:
    bilingual = ""
    if display_both:
        bilingual = (
            "\n\nBILINGUAL DISPLAY MODE:\n"
            f"- Display BOTH {from_language} and {to_language} in the output image.\n"
            f"- Show the original {from_language} text at the TOP of each speech balloon.\n"
            f"- Show the translated {to_language} text at the BOTTOM of each speech balloon.\n"
            "- Both languages should be clearly visible and readable.\n"
            "- Adjust font sizes if necessary to fit both languages in the speech balloons."
        )
    return (
        f"Translate this manga page from {from_language} to {to_language}.\n\n"
        "IMPORTANT TRANSLATION GUIDELINES:\n"
        "- Do NOT translate literally word-by-word. Instead, think about the context, character "
        "emotions, and scene atmosphere.\n"
        f"- Adapt the translation to sound natural in {to_language} while preserving the original "
        "meaning and tone.\n"
        "- Consider manga-specific expressions, onomatopoeia, and cultural nuances when translating.\n"
        f"- Make the dialogue flow naturally as if it was originally written in {to_language}.\n\n"
        "IMAGE REQUIREMENTS:\n"
        "- Maintain all characters, backgrounds, speech balloon shapes, panel grids, and manga structure.\n"
        f"- The original image size is {aspect_ratio}. Make image which has EXACTLY SAME ratio and "
        "layout with original one.\n"
        "- Translate speech balloon text, onomatopoeia, handwritten text, and all other texts that are "
        f"not in {to_language}.\n"
        "- Keep all visual elements unchanged except for the translated text." + bilingual
    )


def colorize_translate_prompt(
    ref_count: int,
    aspect_ratio: str,
    from_language: str,
    to_language: str,
    display_both: bool,
) -> str:
    bilingual = ""
    if display_both:
        bilingual = (
            f"\n- BILINGUAL MODE: Display BOTH languages - show original {from_language} text at the "
            f"TOP and translated {to_language} text at the BOTTOM of each speech balloon. Adjust font "
            "sizes if necessary to fit both languages clearly."
        )
    return (
        f"Colorize AND translate this manga page from {from_language} to {to_language}. "
        f"Refer to {_ref_phrase(ref_count)} to maintain color consistency.\n\n"
        "COLORING REQUIREMENTS:\n"
        "- Apply vibrant, rich, and diverse colors throughout the entire image.\n"
        "- Use a colorful and visually appealing palette that brings the manga to life.\n"
        "- Add depth and dimension with shading and highlights where appropriate.\n"
        "- Make the coloring look professional and polished like a published color manga.\n\n"
        "COLOR CONSISTENCY REQUIREMENTS:\n"
        "- Maintain cosmetic features (eye color, hair color, skin tone) consistently for each "
        "character across all pages.\n"
        "- Maintain consistency in background colors and object colors when they reappear.\n"
        "- Color different characters with distinct colors, but the same character must be colored "
        "consistently.\n"
        "- If a character is wearing new clothing, draw them with appropriate different clothing colors.\n\n"
        "TRANSLATION REQUIREMENTS:\n"
        "- Do NOT translate literally word-by-word. Think about context, character emotions, and "
        "scene atmosphere.\n"
        f"- Adapt the translation to sound natural in {to_language} while preserving the original "
        "meaning and tone.\n"
        "- Consider manga-specific expressions, onomatopoeia, and cultural nuances when translating.\n"
        f"- Make the dialogue flow naturally as if it was originally written in {to_language}.\n"
        "- Translate speech balloon text, onomatopoeia, handwritten text, and all other texts."
        + bilingual
        + "\n\nIMAGE REQUIREMENTS:\n"
        f"- The original image size is {aspect_ratio}. Make image which has EXACTLY SAME ratio and "
        "layout with original one.\n"
        "- Preserve speech balloon shapes, panel grids, and all structural elements.\n"
        "- Do NOT add completely new characters or objects that are not present in the original "
        "image. JUST COLORIZE EXISTING ELEMENTS.\n"
        "- Color each panel's scene EXACTLY as shown - DO NOT ADD, MODIFY, OR REMOVE SCENES.\n\n"
        "Colorize and translate the following image:"
    )


def reference_label(ordinal: int, *, translated: bool = False) -> str:
    what = "already colorized and translated" if translated else "already colorized"
    return f"This is reference page {ordinal + 1} ({what}):"


def target_label(ordinal: int, *, translated: bool = False) -> str:
    verb = "Colorize and translate" if translated else "Colorize"
    return f"{verb} page {ordinal + 1}:"
