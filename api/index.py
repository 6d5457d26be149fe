from mangum import Mangum

from api.app import create_app

app = create_app()

handler = Mangum(app)
