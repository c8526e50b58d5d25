"""Static "checkpoint complete" pages.

The ad-gate redirects the user here after the external task. The page only
tells the user to go back to the key system; it carries no state and records
nothing. Progress is made by entering the challenge code.
"""

from __future__ import annotations

import html

from .checkpoints import CheckpointDefinition

_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{title} Complete</title>
    <style>
        * {{ margin: 0; padding: 0; box-sizing: border-box; }}
        body {{
            font-family: 'Segoe UI', sans-serif;
            background: linear-gradient(135deg, #667eea 0%, #764ba2 100%);
            min-height: 100vh;
            display: flex;
            align-items: center;
            justify-content: center;
            padding: 20px;
        }}
        .container {{
            background: white;
            border-radius: 20px;
            padding: 40px;
            max-width: 500px;
            width: 100%;
            text-align: center;
            box-shadow: 0 20px 60px rgba(0,0,0,0.3);
        }}
        h1 {{ color: #667eea; margin-bottom: 20px; font-size: 32px; }}
        .checkmark {{
            width: 80px; height: 80px; margin: 0 auto 30px;
            background: #4caf50; border-radius: 50%; color: white; font-size: 48px;
            display: flex; align-items: center; justify-content: center;
        }}
        p {{ color: #666; font-size: 16px; line-height: 1.6; margin-bottom: 30px; }}
        .btn {{
            background: #667eea; color: white; padding: 15px 40px; border-radius: 10px;
            font-size: 18px; font-weight: bold; text-decoration: none; display: inline-block;
        }}
        .btn:hover {{ background: #5568d3; }}
    </style>
</head>
<body>
    <div class="container">
        <div class="checkmark">&#10003;</div>
        <h1>{title} Complete!</h1>
        <p>{message}</p>
        <a href="{return_url}" class="btn">Return to Key System</a>
    </div>
    <script>
        setTimeout(() => {{ window.close(); }}, 5000);
    </script>
</body>
</html>
"""


def render_landing_page(definition: CheckpointDefinition, return_url: str) -> str:
    return _PAGE.format(
        title=html.escape(definition.title),
        message=html.escape(definition.landing_message),
        return_url=html.escape(return_url or "about:blank", quote=True),
    )
