"""Title, scene and visual-cue extraction from generated Markdown."""
import re
from typing import List, Tuple

_BOLD_LINE = re.compile(r"^\*\*(.*?)\*\*$")
_EPISODE_HEADING = re.compile(r"^Episode\s+\d+:\s*(.+)$", re.IGNORECASE)
_SCENE_BREAK = re.compile(r"\[Scene Break\]|\[New Scene\]|^---+$|^\*{3,}$", re.IGNORECASE | re.MULTILINE)

DEFAULT_SCENE_DESCRIPTION = "A dramatic manga scene with characters in intense action"


def _strip_front_matter(text: str) -> str:
    text = text.strip()
    if text.startswith("---"):
        end = text.find("---", 3)
        if end != -1:
            return text[end + 3:].strip()
    return text


def _split_title(markdown: str, default_title: str, scan_lines: int = 10) -> Tuple[str, int, List[str]]:
    lines = markdown.split("\n")
    title = default_title
    start = 0
    for i, raw in enumerate(lines[:scan_lines]):
        line = raw.strip()
        if line.startswith("# "):
            return line[2:].strip(), i + 1, lines
        if line.lower().startswith("title:"):
            title = line[6:].strip()
            start = i + 1
            continue
        bold = _BOLD_LINE.match(line)
        if bold and bold.group(1).strip():
            return bold.group(1).strip(), i + 1, lines
    return title, start, lines


def _body_from(lines: List[str], start: int) -> str:
    while start < len(lines) and not lines[start].strip():
        start += 1
    return "\n".join(lines[start:]).strip()


def parse_story_content(markdown: str) -> Tuple[str, str]:
    """Split a generated story into (title, body). Falls back to 'Untitled Story'."""
    title, start, lines = _split_title(markdown, "Untitled Story")
    return title, _body_from(lines, start)


def parse_episode_content(markdown: str, episode_number: int) -> Tuple[str, str]:
    """Split a generated episode into (title, body); titles are always 'Episode N: ...'."""
    default = f"Episode {episode_number}"
    title, start, lines = _split_title(markdown, default)
    if title != default:
        heading = _EPISODE_HEADING.match(title)
        if heading:
            title = f"Episode {episode_number}: {heading.group(1).strip()}"
        elif not title.lower().startswith("episode"):
            title = f"Episode {episode_number}: {title}"
    return title, _body_from(lines, start)


def extract_visual_description(scene: str, max_length: int = 300) -> str:
    """Reduce a scene's prose to a short prompt: narrative sentences plus bracketed visual cues, minus dialogue."""
    text = _strip_front_matter(scene)
    text = re.sub(r'"[^"]*"', "", text)
    text = re.sub(r"“[^”]*”", "", text)
    text = re.sub(r"^[A-Za-z]+\s*:", "", text, flags=re.MULTILINE)
    text = re.sub(r"^#+\s.*$", "", text, flags=re.MULTILINE)
    text = re.sub(r"^(Chapter|Episode)\s+\d+.*$", "", text, flags=re.MULTILINE | re.IGNORECASE)

    cues = [c.strip() for c in re.findall(r"\[([^\]]+)\]", text) + re.findall(r"\(([^)]+)\)", text)]
    text = re.sub(r"\[[^\]]+\]|\([^)]+\)", "", text)
    text = re.sub(r"[#*_`:{}\[\]]", "", text)
    text = re.sub(r"\s+", " ", text)

    sentences = [
        s.strip() for s in re.split(r"[.!?]+", text)
        if len(s.strip()) > 10 and len(s.split()) > 2
    ]
    description = ". ".join(sentences[:3])
    cues = [re.sub(r"[:{}\[\]]", "", c).strip() for c in cues]
    cues = [c for c in cues if len(c) > 5]
    if cues:
        description = ". ".join(filter(None, [description, *cues[:2]]))

    description = re.sub(r"\s+", " ", description).replace("..", ".").strip()
    if len(description) < 15:
        description = DEFAULT_SCENE_DESCRIPTION
    if len(description) > max_length:
        description = description[:max_length].rsplit(" ", 1)[0]
    return description


def parse_episode_scenes(markdown: str, max_scenes: int = 8) -> List[str]:
    """
    Visual descriptions for an episode's scenes, at most ``max_scenes``.

    Scenes are delimited by break markers; without any, paragraphs are
    grouped three at a time.
    """
    content = _strip_front_matter(markdown)
    paragraphs = [p.strip() for p in content.split("\n\n") if p.strip()]

    scenes = []
    current: List[str] = []
    saw_break = False
    for paragraph in paragraphs:
        if _SCENE_BREAK.search(paragraph):
            saw_break = True
            if current:
                scenes.append("\n\n".join(current))
            current = []
            continue
        current.append(paragraph)
    if current:
        scenes.append("\n\n".join(current))

    if not saw_break:
        scenes = ["\n\n".join(paragraphs[i:i + 3]) for i in range(0, len(paragraphs), 3)]

    return [extract_visual_description(s) for s in scenes[:max_scenes]]
