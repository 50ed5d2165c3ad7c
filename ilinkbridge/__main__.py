from ilinkbridge.cli import run

run()
