from borrowpal import create_app

app = create_app()
