"""
Prompt assembly helpers shared by the video backends and image edits.
"""

import re

from .base import VideoRequest

GRID_TERMS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (r"2x2", r"3x3", r"collage", r"grid", r"split", r"matrix", r"panels", r"multiple views")
]

MOTION_PHRASES = {
    "dolly_in": "dolly in zoom",
    "dolly_out": "dolly out zoom",
    "pan_left": "pan left movement",
    "pan_right": "pan right movement",
    "tilt_up": "tilt up camera",
    "tilt_down": "tilt down camera",
    "rotate_cw": "clockwise rotation",
    "rotate_ccw": "counter-clockwise rotation",
}

IDENTITY_PROMPT = (
    "Describe the character's clothing and appearance in detail (colors, hairstyle, "
    "accessories) and the environment so a video generator can maintain consistency. "
    "Use neutral, objective language and avoid any violent or sensitive terms. Max 30 words."
)


def motion_description(motion_type: str | None, intensity: int = 5) -> str:
    """Camera phrase scaled by intensity: >7 dramatic, <4 subtle, else smooth."""
    phrase = MOTION_PHRASES.get(motion_type or "auto")
    if phrase is None:
        return "natural cinematic movement"
    level = "dramatic" if intensity > 7 else ("subtle" if intensity < 4 else "smooth")
    return f"{level} {phrase}"


def strip_grid_terms(prompt: str) -> str:
    """Remove storyboard layout words that confuse video models."""
    for term in GRID_TERMS:
        prompt = term.sub("", prompt)
    return re.sub(r"\s{2,}", " ", prompt).strip()


def _suffixes(request: VideoRequest, speaking: str) -> tuple[str, str, str, str]:
    motion = request.motion
    action = f". ACTION: {motion.motion_prompt}" if motion.motion_prompt else ""
    identity = f". SUBJECT: {request.identity}" if request.identity else ""
    style = f". STYLE: {request.style}" if request.style else ""
    talk = speaking if motion.is_speaking else ""
    return action, identity, style, talk


def build_cinematic_prompt(request: VideoRequest) -> str:
    """Veo prompt: scene, style, motion, subject, dialogue."""
    motion = request.motion
    scene = motion.custom_instruction or request.prompt
    action, identity, style, talk = _suffixes(
        request,
        ". DIALOGUE: The character is speaking, their mouth is moving naturally and "
        "expressively. High focus on lip-sync and facial muscle movement.",
    )
    camera = motion_description(motion.motion_type, motion.intensity)
    return (
        f"Cinematic video of: {scene}{style}. {camera}{action}{identity}{talk}. "
        "High quality, consistent visuals."
    )


def build_jimeng_prompt(request: VideoRequest) -> str:
    """
    Jimeng prompt: grid words stripped, custom instruction merged.

    A custom instruction replaces the base prompt when it already contains it
    or is longer than half of it; otherwise it is appended.
    """
    motion = request.motion
    base = strip_grid_terms(request.prompt or "")

    custom = (motion.custom_instruction or "").strip()
    if custom:
        if base.lower() in custom.lower() or len(custom) > len(base) * 0.5:
            base = custom
        else:
            base = f"{base} {custom}"

    action, identity, style, talk = _suffixes(
        request, ". DIALOGUE: The character is speaking naturally."
    )
    camera = motion_description(motion.motion_type, motion.intensity)
    return f"{base}{style}. {camera}{action}{identity}{talk}".strip()


INPAINT_PREFIX = "[INPAINT MODE]"


def build_inpaint_prompt(
    prompt: str,
    aspect_ratio: str = "16:9",
    multiview: bool = False,
    masked: bool = True,
) -> str:
    """
    Partial repaint prompt.

    Multi-view character sheets keep every other view untouched. Without a
    mask the whole image is edited while keeping its composition.
    """
    if multiview:
        context = (
            "CONTEXT: This is a professional CHARACTER REFERENCE SHEET / MULTI-VIEW GRID. "
            "Keep the layout, three-view structure and all other views EXACTLY as they are. "
            "ONLY modify the target area while maintaining the identity and style of the existing views."
        )
    else:
        context = "CONTEXT: Maintain exact composition and layout of the original image."

    if masked:
        instruction = (
            "INSTRUCTION: Repaint ONLY the area indicated by the white mask in the mask image provided. "
            "Maintain consistent style, lighting, and textures with the rest of the original image."
        )
    else:
        instruction = (
            "INSTRUCTION: Apply the modification to the original image. "
            "Maintain consistent style, lighting, and textures."
        )

    return "\n".join(
        [
            "TASK: Partial Repaint (Inpainting)",
            context,
            f"Target Modification: {prompt}",
            instruction,
            f"The new content should be: {prompt}",
            "STRICT REQUIREMENTS:",
            f"- ASPECT RATIO: MUST BE {aspect_ratio}.",
            "- LAYOUT: DO NOT ZOOM, DO NOT CROP, DO NOT CHANGE CAMERA ANGLE.",
            "- NO TEXT, NO LABELS, NO UI ELEMENTS.",
        ]
    )
