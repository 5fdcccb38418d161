from storeledger import create_app

app = create_app()
