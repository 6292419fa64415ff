STORY_SYSTEM_PROMPT = """You are a serialized fiction writer. Write the opening of a long-running manga-style story
that can be continued episode by episode. Keep content within the requested rating and audience.
Output Markdown only: a first line '# <Title>' followed by the story text in short paragraphs."""


STORY_PROMPT_TEMPLATE = """Write a new story with these reader preferences:
- Genres: {genres}
- Themes: {themes}
- Art style (for later illustration): {art_style}
- Target audience: {target_audience}
- Content rating: {content_rating}

Reader insights (may be empty):
{insights}

Constraints:
- 1500-2500 words.
- Introduce the main characters, the setting and a central conflict that can carry several episodes.
- End on an open thread, not a resolution.
Return ONLY the Markdown story."""


EPISODE_SYSTEM_PROMPT = """You are continuing a serialized manga-style story. Each episode is self-contained
enough to read on its own but advances the ongoing plot. Output Markdown only: a first line
'# Episode <number>: <Title>' followed by the episode text. Separate scenes with a line containing only '---'
and describe what each scene looks like in [square brackets] at its start."""


EPISODE_PROMPT_TEMPLATE = """Story title: {story_title}

Story so far:
{story_content}

Write episode {episode_number} for this story.
- Genres: {genres}
- Themes: {themes}
- Target audience: {target_audience}
- Content rating: {content_rating}

Constraints:
- 800-1500 words, 3-8 scenes.
- Keep characters and setting consistent with the story so far.
Return ONLY the Markdown episode."""


IMAGE_STYLE_SUFFIX = {
    "Traditional": "traditional manga ink illustration, screentone shading",
    "Modern": "modern manga illustration, clean digital lineart",
    "Minimalist": "minimalist manga panel, simple lines, lots of negative space",
    "Detailed": "highly detailed manga illustration, intricate backgrounds",
    "Cartoon": "cartoon style illustration, bold outlines, flat colors",
    "Realistic": "semi-realistic manga illustration, realistic proportions",
    "Chibi": "chibi manga style, cute super-deformed characters",
    "Dark": "dark moody manga illustration, heavy shadows",
    "Colorful": "vibrant colorful manga illustration",
    "Black and White": "black and white manga panel, ink only",
}

IMAGE_PROMPT_TEMPLATE = "{description}, {style}, no text, no speech bubbles"
