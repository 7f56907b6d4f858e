from mangum import Mangum

from magic_ledger.api import app

app.root_path = "/api"

handler = Mangum(app)
