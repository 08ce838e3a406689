import queue

from embedserver import Deferred, EmbedHttpServer, Response, ServerConfig

approvals = queue.Queue()


def status(request):
    return Response.json({'status': 'ready'})


def approve(request):
    # Parked until someone answers on the console below
    return Deferred(on_parked=lambda token, req: approvals.put((token, req)), timeout=120)


if __name__ == '__main__':
    server = EmbedHttpServer(ServerConfig(port=8000, builtin_routes=True))
    server.register('GET', '/status', status)
    server.register('POST', '/approve/{item}', approve)

    with server:
        print(f"Listening on http://127.0.0.1:{server.port}")
        while True:
            try:
                token, request = approvals.get()
            except KeyboardInterrupt:
                break
            answer = input(f"Approve {request.path_params['item']}? [y/N] ")
            if answer.lower().startswith('y'):
                server.complete(token, 200, [('Content-Type', 'text/plain')], b'approved')
            else:
                server.complete(token, 403, [('Content-Type', 'text/plain')], b'rejected')
