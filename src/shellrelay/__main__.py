from shellrelay.main import run

run()
