import sys
from os import listdir
from os.path import join

from pylint.lint import Run

THRESHOLD = 9.75

core = [join("core", c) for c in listdir("core") if c.endswith(".py")]

results = Run(["bot.py", "app.py", *core], exit=False)

score = results.linter.stats.global_note
if score <= THRESHOLD:
    sys.exit(1)
