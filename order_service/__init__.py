"""Order Service: 配送料ルール・追加サービス・注文ライフサイクル"""
