from .ingestor import run

run()
