"""
Package entry point.

Allows running the CLI via:

    python -m course_chatbot

This simply forwards execution to course_chatbot.cli.main().
"""

from course_chatbot.cli import main

if __name__ == "__main__":
    main()
